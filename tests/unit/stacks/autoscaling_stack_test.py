"""Unit tests for the autoscaling stack."""

import aws_cdk as cdk
import pytest
from aws_cdk.assertions import Match, Template

from infrastructure.autoscaling_stack import AutoScalingStack
from infrastructure.service_stack import ServiceStack

TEST_ENV = cdk.Environment(account="123456789012", region="ap-northeast-2")


def _build(make_settings, profile, schedule_time_zone=None) -> AutoScalingStack:
    app = cdk.App()
    service_stack = ServiceStack(app, "TestServiceStack", settings=make_settings(), env=TEST_ENV)
    return AutoScalingStack(
        app,
        "TestAutoScalingStack",
        ecs_service=service_stack.service,
        profile=profile,
        schedule_time_zone=schedule_time_zone,
        env=TEST_ENV,
    )


@pytest.fixture(scope="module")
def autoscaling_stack(make_settings, default_profile):
    return _build(make_settings, default_profile)


@pytest.fixture(scope="module")
def template(autoscaling_stack):
    return Template.from_stack(autoscaling_stack)


def _step_policies(template) -> dict:
    policies = template.find_resources(
        "AWS::ApplicationAutoScaling::ScalingPolicy",
        {"Properties": {"PolicyType": "StepScaling"}},
    )
    return {logical_id: resource["Properties"] for logical_id, resource in policies.items()}


class TestScalableTarget:
    def test_single_target(self, template):
        template.resource_count_is("AWS::ApplicationAutoScaling::ScalableTarget", 1)

    def test_target_dimension_and_capacity(self, template):
        template.has_resource_properties(
            "AWS::ApplicationAutoScaling::ScalableTarget",
            {
                "ServiceNamespace": "ecs",
                "ScalableDimension": "ecs:service:DesiredCount",
                "MinCapacity": 2,
                "MaxCapacity": 100,
            },
        )

    def test_exported_target_id(self, template):
        template.has_output(
            "ScalingTargetId",
            {"Export": {"Name": "FastScaling-ScalingTargetId"}},
        )

    def test_exposes_policies(self, autoscaling_stack):
        assert autoscaling_stack.scale_out_policy is not None
        assert autoscaling_stack.scale_in_policy is not None
        assert autoscaling_stack.cpu_scale_out_policy is not None
        assert autoscaling_stack.memory_scale_out_policy is not None


class TestStepScalingPolicies:
    def test_four_step_policies_and_one_target_tracking(self, template):
        template.resource_count_is("AWS::ApplicationAutoScaling::ScalingPolicy", 5)
        assert len(_step_policies(template)) == 4

    def test_all_step_policies_change_capacity_on_average(self, template):
        for properties in _step_policies(template).values():
            config = properties["StepScalingPolicyConfiguration"]
            assert config["AdjustmentType"] == "ChangeInCapacity"
            assert config["MetricAggregationType"] == "Average"

    def test_cooldowns(self, template):
        cooldowns = sorted(
            properties["StepScalingPolicyConfiguration"]["Cooldown"]
            for properties in _step_policies(template).values()
        )
        # rps scale out, cpu, memory, rps scale in
        assert cooldowns == [10, 60, 60, 300]

    def test_scale_out_step_adjustments(self, template):
        policies = _step_policies(template)
        fast = [
            p["StepScalingPolicyConfiguration"]
            for p in policies.values()
            if p["StepScalingPolicyConfiguration"]["Cooldown"] == 10
        ]
        assert len(fast) == 1
        adjustments = sorted(a["ScalingAdjustment"] for a in fast[0]["StepAdjustments"])
        assert adjustments == [1, 2, 4]

    def test_scale_in_step_adjustments(self, template):
        policies = _step_policies(template)
        slow = [
            p["StepScalingPolicyConfiguration"]
            for p in policies.values()
            if p["StepScalingPolicyConfiguration"]["Cooldown"] == 300
        ]
        assert len(slow) == 1
        adjustments = sorted(a["ScalingAdjustment"] for a in slow[0]["StepAdjustments"])
        assert adjustments == [-2, -1]


class TestStepScalingAlarms:
    def test_one_alarm_per_step_policy(self, template):
        template.resource_count_is("AWS::CloudWatch::Alarm", 4)

    def test_rps_scale_out_alarm(self, template):
        template.has_resource_properties(
            "AWS::CloudWatch::Alarm",
            {
                "Namespace": "FastScaling/Application",
                "MetricName": "RequestsPerSecond",
                "Statistic": "Average",
                "Period": 10,
                "Threshold": 100,
                "ComparisonOperator": "GreaterThanOrEqualToThreshold",
            },
        )

    def test_rps_scale_in_alarm(self, template):
        template.has_resource_properties(
            "AWS::CloudWatch::Alarm",
            {
                "Namespace": "FastScaling/Application",
                "MetricName": "RequestsPerSecond",
                "Period": 60,
                "Threshold": 50,
                "ComparisonOperator": "LessThanOrEqualToThreshold",
            },
        )

    @pytest.mark.parametrize(
        "metric_name, threshold",
        [("CPUUtilization", 70), ("MemoryUtilization", 80)],
    )
    def test_service_metric_alarms(self, template, metric_name, threshold):
        template.has_resource_properties(
            "AWS::CloudWatch::Alarm",
            {
                "Namespace": "AWS/ECS",
                "MetricName": metric_name,
                "Period": 60,
                "Threshold": threshold,
                "Dimensions": Match.array_with([Match.object_like({"Name": "ServiceName"})]),
            },
        )
        template.has_resource_properties(
            "AWS::CloudWatch::Alarm",
            {
                "MetricName": metric_name,
                "Dimensions": Match.array_with([Match.object_like({"Name": "ClusterName"})]),
            },
        )


class TestTargetTracking:
    def test_cpu_target_tracking(self, template):
        template.has_resource_properties(
            "AWS::ApplicationAutoScaling::ScalingPolicy",
            {
                "PolicyType": "TargetTrackingScaling",
                "TargetTrackingScalingPolicyConfiguration": Match.object_like(
                    {
                        "TargetValue": 60,
                        "ScaleInCooldown": 300,
                        "ScaleOutCooldown": 60,
                        "PredefinedMetricSpecification": {
                            "PredefinedMetricType": "ECSServiceAverageCPUUtilization"
                        },
                    }
                ),
            },
        )


class TestScheduledScaling:
    @pytest.mark.parametrize(
        "name, expression, min_capacity",
        [
            ("MorningScaleOut", "cron(30 8 * * ? *)", 5),
            ("EveningScaleIn", "cron(0 22 * * ? *)", 2),
            ("WeekendScaleDown", "cron(0 23 ? * FRI *)", 1),
            ("WeekendScaleUp", "cron(0 7 ? * MON *)", 2),
        ],
    )
    def test_scheduled_action(self, template, name, expression, min_capacity):
        template.has_resource_properties(
            "AWS::ApplicationAutoScaling::ScalableTarget",
            {
                "ScheduledActions": Match.array_with(
                    [
                        Match.object_like(
                            {
                                "ScheduledActionName": name,
                                "Schedule": expression,
                                "ScalableTargetAction": {
                                    "MinCapacity": min_capacity,
                                    "MaxCapacity": 100,
                                },
                            }
                        )
                    ]
                )
            },
        )

    def test_schedules_in_utc_by_default(self, template):
        targets = template.find_resources("AWS::ApplicationAutoScaling::ScalableTarget")
        (target,) = targets.values()
        for action in target["Properties"]["ScheduledActions"]:
            assert "Timezone" not in action

    def test_schedule_time_zone(self, make_settings, default_profile):
        stack = _build(make_settings, default_profile, schedule_time_zone="Asia/Seoul")
        targets = Template.from_stack(stack).find_resources("AWS::ApplicationAutoScaling::ScalableTarget")
        (target,) = targets.values()
        assert {action["Timezone"] for action in target["Properties"]["ScheduledActions"]} == {"Asia/Seoul"}


class TestCustomProfile:
    def test_capacity_follows_profile(self, make_settings, profile_data):
        from infrastructure.scaling import ScalingProfile

        profile_data["min_capacity"] = 1
        profile_data["max_capacity"] = 10
        profile_data["schedules"] = []
        stack = _build(make_settings, ScalingProfile.model_validate(profile_data))

        template = Template.from_stack(stack)
        template.has_resource_properties(
            "AWS::ApplicationAutoScaling::ScalableTarget",
            {"MinCapacity": 1, "MaxCapacity": 10, "ScheduledActions": Match.absent()},
        )
