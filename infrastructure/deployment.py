"""Composition of the fast-scaling stacks into one CDK app."""

import logging
from typing import Optional

import aws_cdk as cdk

from infrastructure.autoscaling_stack import AutoScalingStack
from infrastructure.config import Settings
from infrastructure.github_build_stack import GitHubBuildStack
from infrastructure.pipeline_stack import PipelineStack
from infrastructure.scaling import ScalingProfile, load_scaling_profile
from infrastructure.service_stack import ServiceStack

logger = logging.getLogger(__name__)


def resolve_environment(app: cdk.App, settings: Settings) -> cdk.Environment:
    """Build the stack environment; CDK context values win over settings."""
    return cdk.Environment(
        account=app.node.try_get_context("account") or settings.account,
        region=app.node.try_get_context("region") or settings.region,
    )


def build_stacks(
    app: cdk.App,
    settings: Settings,
    profile: Optional[ScalingProfile] = None,
) -> dict[str, cdk.Stack]:
    """Create every stack of the app and wire their cross-stack references.

    Args:
        app: The CDK app (or any construct scope) to add the stacks to.
        settings: Deployment settings.
        profile: Scaling profile; loaded from settings.scaling_profile_path when omitted.

    Returns:
        Dictionary of stacks keyed by "service", "autoscaling", "pipeline" and "github_build".
    """
    if profile is None:
        profile = load_scaling_profile(settings.scaling_profile_path)

    env = resolve_environment(app, settings)
    logger.info(f"Building stacks for account={env.account or '<unresolved>'} region={env.region}")

    service_stack = ServiceStack(
        app,
        "FastScalingServiceStack",
        settings=settings,
        desired_count=profile.min_capacity,
        env=env,
        description="Fast scaling ECS Fargate service, load balancer and alarms",
    )

    autoscaling_stack = AutoScalingStack(
        app,
        "FastScalingAutoScalingStack",
        ecs_service=service_stack.service,
        profile=profile,
        schedule_time_zone=settings.schedule_time_zone,
        env=env,
        description="Step, target tracking and scheduled scaling for the fast scaling service",
    )
    autoscaling_stack.add_dependency(service_stack)

    pipeline_stack = PipelineStack(
        app,
        "FastScalingPipelineStack",
        settings=settings,
        vpc=service_stack.vpc,
        load_balancer=service_stack.alb,
        listener=service_stack.listener,
        target_group=service_stack.blue_target_group,
        env=env,
        description="CodeBuild, CodeDeploy blue/green and CodePipeline for the fast scaling service",
    )
    # The service is imported by name, so the dependency is not implied by references
    pipeline_stack.add_dependency(service_stack)

    github_build_stack = GitHubBuildStack(
        app,
        "FastScalingGitHubBuildStack",
        settings=settings,
        env=env,
        description="Manual GitHub build for the fast scaling application image",
    )

    return {
        "service": service_stack,
        "autoscaling": autoscaling_stack,
        "pipeline": pipeline_stack,
        "github_build": github_build_stack,
    }
