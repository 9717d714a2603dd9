"""CI/CD pipeline stack for the fast-scaling ECS service.

Source (GitHub) -> Build (CodeBuild, docker build + push to ECR)
-> Deploy (CodeDeploy ECS blue/green, canary 10% for 5 minutes).

The ECS cluster and service are imported by name so this stack can be
deployed and torn down independently of the service stack.
"""

import logging

import aws_cdk as cdk
from aws_cdk import (
    aws_codebuild as codebuild,
    aws_codedeploy as codedeploy,
    aws_codepipeline as codepipeline,
    aws_codepipeline_actions as codepipeline_actions,
    aws_ec2 as ec2,
    aws_ecr as ecr,
    aws_ecs as ecs,
    aws_elasticloadbalancingv2 as elbv2,
    aws_iam as iam,
)
from constructs import Construct

from infrastructure.config import Settings
from infrastructure.service_stack import create_health_check

logger = logging.getLogger(__name__)


def create_build_environment(
    scope: cdk.Stack, repository: ecr.IRepository, container_name: str
) -> codebuild.BuildEnvironment:
    """Privileged build environment with what buildspec.yml needs to push an image."""
    return codebuild.BuildEnvironment(
        build_image=codebuild.LinuxBuildImage.STANDARD_7_0,
        privileged=True,
        environment_variables={
            "AWS_DEFAULT_REGION": codebuild.BuildEnvironmentVariable(value=scope.region),
            "AWS_ACCOUNT_ID": codebuild.BuildEnvironmentVariable(value=scope.account),
            "IMAGE_REPO_NAME": codebuild.BuildEnvironmentVariable(value=repository.repository_name),
            "CONTAINER_NAME": codebuild.BuildEnvironmentVariable(value=container_name),
        },
    )


class PipelineStack(cdk.Stack):
    """CodeBuild, CodeDeploy and CodePipeline for blue/green releases."""

    def __init__(
        self,
        scope: Construct,
        construct_id: str,
        settings: Settings,
        vpc: ec2.IVpc,
        load_balancer: elbv2.IApplicationLoadBalancer,
        listener: elbv2.IApplicationListener,
        target_group: elbv2.IApplicationTargetGroup,
        **kwargs,
    ) -> None:
        super().__init__(scope, construct_id, **kwargs)

        if not settings.github_connection_arn and not settings.github_token_secret_name:
            raise ValueError(
                "Pipeline source needs either github_connection_arn or github_token_secret_name"
            )

        self.settings = settings

        cluster = ecs.Cluster.from_cluster_attributes(
            self,
            "ImportedCluster",
            cluster_name=settings.cluster_name,
            vpc=vpc,
        )
        self.service = ecs.FargateService.from_fargate_service_attributes(
            self,
            "ImportedService",
            cluster=cluster,
            service_name=settings.service_name,
        )
        self.ecr_repository = ecr.Repository.from_repository_name(
            self, "ExistingRepo", settings.ecr_repository_name
        )

        self.build_role = self._create_build_role()
        self.build_project = self._create_build_project()
        self.green_target_group, self.test_listener = self._create_green_target_group(
            vpc, load_balancer
        )
        self.deployment_group = self._create_deployment_group(listener, target_group)
        self.pipeline = self._create_pipeline()

        cdk.CfnOutput(
            self,
            "SourceRepoUrl",
            value=settings.github_url,
            description="GitHub repository the pipeline builds",
        )

        cdk.CfnOutput(
            self,
            "ECRRepoUri",
            value=self.ecr_repository.repository_uri,
            description="ECR Repository URI",
        )

        cdk.CfnOutput(
            self,
            "PipelineName",
            value=self.pipeline.pipeline_name,
            description="CodePipeline Name",
        )

        logger.info(
            f"Pipeline stack {construct_id}: {settings.pipeline_name} "
            f"({settings.github_owner}/{settings.github_repo}@{settings.github_branch})"
        )

    def _create_build_role(self) -> iam.Role:
        """CodeBuild service role: ECR push and CloudWatch Logs."""
        return iam.Role(
            self,
            "CodeBuildRole",
            assumed_by=iam.ServicePrincipal("codebuild.amazonaws.com"),
            managed_policies=[
                iam.ManagedPolicy.from_aws_managed_policy_name("AmazonEC2ContainerRegistryPowerUser"),
            ],
            inline_policies={
                "CodeBuildPolicy": iam.PolicyDocument(
                    statements=[
                        iam.PolicyStatement(
                            effect=iam.Effect.ALLOW,
                            actions=[
                                "logs:CreateLogGroup",
                                "logs:CreateLogStream",
                                "logs:PutLogEvents",
                            ],
                            resources=["*"],
                        ),
                    ],
                ),
            },
        )

    def _create_build_project(self) -> codebuild.PipelineProject:
        # Source comes from the pipeline artifact, buildspec.yml from the repository
        return codebuild.PipelineProject(
            self,
            "FastScalingBuild",
            project_name=self.settings.build_project_name,
            environment=create_build_environment(
                self, self.ecr_repository, self.settings.container_name
            ),
            role=self.build_role,
            build_spec=codebuild.BuildSpec.from_source_filename("buildspec.yml"),
        )

    def _create_green_target_group(
        self, vpc: ec2.IVpc, load_balancer: elbv2.IApplicationLoadBalancer
    ) -> tuple[elbv2.ApplicationTargetGroup, elbv2.ApplicationListener]:
        """Green target group plus the test listener that keeps it attached to the ALB."""
        green_target_group = elbv2.ApplicationTargetGroup(
            self,
            "GreenTargetGroup",
            vpc=vpc,
            port=self.settings.container_port,
            protocol=elbv2.ApplicationProtocol.HTTP,
            target_type=elbv2.TargetType.IP,
            health_check=create_health_check(self.settings),
        )

        test_listener = elbv2.ApplicationListener(
            self,
            "TestListener",
            load_balancer=load_balancer,
            port=self.settings.test_listener_port,
            protocol=elbv2.ApplicationProtocol.HTTP,
            default_target_groups=[green_target_group],
            open=False,
        )

        return green_target_group, test_listener

    def _create_deployment_group(
        self,
        listener: elbv2.IApplicationListener,
        blue_target_group: elbv2.IApplicationTargetGroup,
    ) -> codedeploy.EcsDeploymentGroup:
        application = codedeploy.EcsApplication(
            self,
            "FastScalingApp",
            application_name=self.settings.codedeploy_application_name,
        )

        return codedeploy.EcsDeploymentGroup(
            self,
            "FastScalingDeploymentGroup",
            application=application,
            deployment_group_name=self.settings.deployment_group_name,
            service=self.service,
            blue_green_deployment_config=codedeploy.EcsBlueGreenDeploymentConfig(
                listener=listener,
                test_listener=self.test_listener,
                blue_target_group=blue_target_group,
                green_target_group=self.green_target_group,
                # No approval wait time: traffic shifts as soon as green is healthy
                termination_wait_time=cdk.Duration.minutes(5),
            ),
            deployment_config=codedeploy.EcsDeploymentConfig.CANARY_10_PERCENT_5_MINUTES,
            auto_rollback=codedeploy.AutoRollbackConfig(
                failed_deployment=True,
                stopped_deployment=True,
            ),
        )

    def _create_source_action(self, output: codepipeline.Artifact) -> codepipeline.IAction:
        """GitHub source through a CodeStar connection, else an OAuth token secret."""
        if self.settings.github_connection_arn:
            logger.info("Pipeline source: CodeStar connection")
            return codepipeline_actions.CodeStarConnectionsSourceAction(
                action_name="GitHub_Source",
                owner=self.settings.github_owner,
                repo=self.settings.github_repo,
                branch=self.settings.github_branch,
                connection_arn=self.settings.github_connection_arn,
                output=output,
            )

        logger.info(f"Pipeline source: OAuth token from secret {self.settings.github_token_secret_name}")
        return codepipeline_actions.GitHubSourceAction(
            action_name="GitHub_Source",
            owner=self.settings.github_owner,
            repo=self.settings.github_repo,
            branch=self.settings.github_branch,
            oauth_token=cdk.SecretValue.secrets_manager(self.settings.github_token_secret_name),
            output=output,
            trigger=codepipeline_actions.GitHubTrigger.WEBHOOK,
        )

    def _create_pipeline(self) -> codepipeline.Pipeline:
        source_output = codepipeline.Artifact("SourceOutput")
        build_output = codepipeline.Artifact("BuildOutput")

        return codepipeline.Pipeline(
            self,
            "FastScalingPipeline",
            pipeline_name=self.settings.pipeline_name,
            stages=[
                codepipeline.StageProps(
                    stage_name="Source",
                    actions=[self._create_source_action(source_output)],
                ),
                codepipeline.StageProps(
                    stage_name="Build",
                    actions=[
                        codepipeline_actions.CodeBuildAction(
                            action_name="CodeBuild",
                            project=self.build_project,
                            input=source_output,
                            outputs=[build_output],
                        ),
                    ],
                ),
                codepipeline.StageProps(
                    stage_name="Deploy",
                    actions=[
                        codepipeline_actions.CodeDeployEcsDeployAction(
                            action_name="CodeDeploy",
                            deployment_group=self.deployment_group,
                            app_spec_template_input=build_output,
                            task_definition_template_input=build_output,
                        ),
                    ],
                ),
            ],
        )
