"""Auto scaling stack for the fast-scaling ECS service.

Turns a ScalingProfile into Application Auto Scaling resources:
- Scalable target on the service's desired count
- Step scaling on application RPS (fast scale out, slow scale in)
- Step scaling on service CPU and memory
- Target tracking on average CPU as a backstop
- Scheduled capacity changes for business hours and weekends
"""

import logging
from typing import Optional

import aws_cdk as cdk
from aws_cdk import (
    aws_applicationautoscaling as appscaling,
    aws_cloudwatch as cloudwatch,
    aws_ecs as ecs,
)
from constructs import Construct

from infrastructure.scaling import ScalingProfile, StepPolicyConfig

logger = logging.getLogger(__name__)

SCALABLE_DIMENSION = "ecs:service:DesiredCount"


class AutoScalingStack(cdk.Stack):
    """Autoscaling policies for an ECS Fargate service."""

    def __init__(
        self,
        scope: Construct,
        construct_id: str,
        ecs_service: ecs.FargateService,
        profile: ScalingProfile,
        schedule_time_zone: Optional[str] = None,
        **kwargs,
    ) -> None:
        super().__init__(scope, construct_id, **kwargs)

        self.ecs_service = ecs_service
        self.profile = profile
        self.time_zone = cdk.TimeZone.of(schedule_time_zone) if schedule_time_zone else None

        self.scaling_target = appscaling.ScalableTarget(
            self,
            "EcsScalingTarget",
            service_namespace=appscaling.ServiceNamespace.ECS,
            resource_id=f"service/{ecs_service.cluster.cluster_name}/{ecs_service.service_name}",
            scalable_dimension=SCALABLE_DIMENSION,
            min_capacity=profile.min_capacity,
            max_capacity=profile.max_capacity,
        )

        self.scale_out_policy = self._create_step_policy("ScaleOutPolicy", profile.rps_scale_out)
        self.scale_in_policy = self._create_step_policy("ScaleInPolicy", profile.rps_scale_in)
        self.cpu_scale_out_policy = self._create_step_policy("CpuScaleOutPolicy", profile.cpu_scale_out)
        self.memory_scale_out_policy = self._create_step_policy(
            "MemoryScaleOutPolicy", profile.memory_scale_out
        )

        self._setup_target_tracking()
        self._setup_schedules()

        cdk.CfnOutput(
            self,
            "ScalingTargetId",
            value=self.scaling_target.scalable_target_id,
            description="Auto Scaling Target ID",
            export_name="FastScaling-ScalingTargetId",
        )

        cdk.Tags.of(self.scaling_target).add("Component", "AutoScaling")

        logger.info(
            f"Autoscaling stack {construct_id}: capacity {profile.min_capacity}-{profile.max_capacity}, "
            f"4 step policies, {len(profile.schedules)} schedules"
        )

    def _create_metric(self, config: StepPolicyConfig) -> cloudwatch.Metric:
        dimensions = None
        if config.use_service_dimensions:
            dimensions = {
                "ServiceName": self.ecs_service.service_name,
                "ClusterName": self.ecs_service.cluster.cluster_name,
            }

        return cloudwatch.Metric(
            namespace=config.metric_namespace,
            metric_name=config.metric_name,
            dimensions_map=dimensions,
            statistic=config.statistic,
            period=cdk.Duration.seconds(config.period_seconds),
        )

    def _create_step_policy(self, policy_id: str, config: StepPolicyConfig) -> appscaling.StepScalingPolicy:
        logger.debug(
            f"{policy_id}: {config.metric_namespace}/{config.metric_name} "
            f"period={config.period_seconds}s cooldown={config.cooldown_seconds}s "
            f"steps={[step.model_dump() for step in config.steps]}"
        )
        return appscaling.StepScalingPolicy(
            self,
            policy_id,
            scaling_target=self.scaling_target,
            metric=self._create_metric(config),
            adjustment_type=appscaling.AdjustmentType.CHANGE_IN_CAPACITY,
            cooldown=cdk.Duration.seconds(config.cooldown_seconds),
            metric_aggregation_type=appscaling.MetricAggregationType.AVERAGE,
            scaling_steps=config.to_scaling_intervals(),
        )

    def _setup_target_tracking(self) -> None:
        tracking = self.profile.cpu_target_tracking
        self.scaling_target.scale_to_track_metric(
            "CpuTargetTracking",
            target_value=tracking.target_value,
            predefined_metric=appscaling.PredefinedMetric.ECS_SERVICE_AVERAGE_CPU_UTILIZATION,
            scale_in_cooldown=cdk.Duration.seconds(tracking.scale_in_cooldown_seconds),
            scale_out_cooldown=cdk.Duration.seconds(tracking.scale_out_cooldown_seconds),
        )

    def _setup_schedules(self) -> None:
        for schedule in self.profile.schedules:
            logger.debug(
                f"{schedule.name}: cron {schedule.minute} {schedule.hour} {schedule.week_day or '*'} "
                f"-> {schedule.min_capacity}-{schedule.max_capacity}"
            )
            self.scaling_target.scale_on_schedule(
                schedule.name,
                schedule=schedule.to_schedule(),
                min_capacity=schedule.min_capacity,
                max_capacity=schedule.max_capacity,
                time_zone=self.time_zone,
            )
