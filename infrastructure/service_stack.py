"""Service stack for the fast-scaling ECS Fargate application.

This stack creates the resources the autoscaling and pipeline stacks build on:
- VPC with public/private subnets
- ECS cluster
- CloudWatch log group
- IAM roles for the task
- Fargate task definition and service (CodeDeploy deployment controller)
- Application Load Balancer, production listener and blue target group
- CloudWatch alarms for CPU, memory, request rate, response time and RPS
"""

import logging

import aws_cdk as cdk
from aws_cdk import (
    aws_cloudwatch as cloudwatch,
    aws_cloudwatch_actions as cw_actions,
    aws_ec2 as ec2,
    aws_ecr as ecr,
    aws_ecs as ecs,
    aws_elasticloadbalancingv2 as elbv2,
    aws_iam as iam,
    aws_logs as logs,
    aws_sns as sns,
    aws_sns_subscriptions as subscriptions,
)
from constructs import Construct

from infrastructure.config import Settings

logger = logging.getLogger(__name__)

APPLICATION_METRIC_NAMESPACE = "FastScaling/Application"


def create_health_check(settings: Settings) -> elbv2.HealthCheck:
    """Target group health check shared by the blue and green target groups.

    Short intervals so new tasks join the load balancer quickly.
    """
    return elbv2.HealthCheck(
        enabled=True,
        healthy_http_codes="200",
        interval=cdk.Duration.seconds(5),
        timeout=cdk.Duration.seconds(4),
        healthy_threshold_count=2,
        unhealthy_threshold_count=2,
        path=settings.health_check_path,
        protocol=elbv2.Protocol.HTTP,
    )


class ServiceStack(cdk.Stack):
    """ECS Fargate service, load balancer and alarms."""

    def __init__(
        self,
        scope: Construct,
        construct_id: str,
        settings: Settings,
        desired_count: int = 2,
        **kwargs,
    ) -> None:
        super().__init__(scope, construct_id, **kwargs)

        self.settings = settings
        self.desired_count = desired_count

        self.vpc = self._create_vpc()
        self.ecr_repository = ecr.Repository.from_repository_name(
            self, "AppRepository", settings.ecr_repository_name
        )
        self.iam_roles = self._create_iam_roles()
        self.log_group = self._create_log_group()
        self.cluster = self._create_ecs_cluster()
        self.alb = self._create_application_load_balancer()
        self.blue_target_group, self.listener = self._create_listener()
        self.service = self._create_service()
        self.alarm_topic = self._create_alarm_topic()
        self.alarms = self._create_alarms()

        cdk.CfnOutput(
            self,
            "LoadBalancerDNS",
            value=self.alb.load_balancer_dns_name,
            description="Application Load Balancer DNS name",
        )

        cdk.CfnOutput(
            self,
            "ServiceName",
            value=self.service.service_name,
            description="ECS service name",
        )

        logger.info(
            f"Service stack {construct_id}: {settings.service_name} on {settings.cluster_name}, "
            f"{len(self.alarms)} alarms"
        )

    def _create_vpc(self) -> ec2.Vpc:
        """Create VPC with public and private subnets."""
        vpc = ec2.Vpc(
            self,
            "FastScalingVPC",
            max_azs=2,
            nat_gateways=1,
            subnet_configuration=[
                ec2.SubnetConfiguration(
                    subnet_type=ec2.SubnetType.PUBLIC,
                    name="Public",
                    cidr_mask=24,
                ),
                ec2.SubnetConfiguration(
                    subnet_type=ec2.SubnetType.PRIVATE_WITH_EGRESS,
                    name="Private",
                    cidr_mask=24,
                ),
            ],
        )

        # Image layers come from S3; keep pulls off the NAT gateway
        vpc.add_gateway_endpoint(
            "S3Endpoint",
            service=ec2.GatewayVpcEndpointAwsService.S3,
        )

        vpc.add_interface_endpoint(
            "ECRDockerEndpoint",
            service=ec2.InterfaceVpcEndpointAwsService.ECR_DOCKER,
        )

        vpc.add_interface_endpoint(
            "ECRAPIEndpoint",
            service=ec2.InterfaceVpcEndpointAwsService.ECR,
        )

        return vpc

    def _create_iam_roles(self) -> dict[str, iam.Role]:
        """Create IAM roles for ECS tasks."""
        execution_role = iam.Role(
            self,
            "ECSTaskExecutionRole",
            assumed_by=iam.ServicePrincipal("ecs-tasks.amazonaws.com"),
            managed_policies=[
                iam.ManagedPolicy.from_aws_managed_policy_name(
                    "service-role/AmazonECSTaskExecutionRolePolicy"
                )
            ],
        )
        self.ecr_repository.grant_pull(execution_role)

        # The application publishes RequestsPerSecond itself
        task_role = iam.Role(
            self,
            "ECSTaskRole",
            assumed_by=iam.ServicePrincipal("ecs-tasks.amazonaws.com"),
        )
        task_role.add_to_policy(
            iam.PolicyStatement(
                effect=iam.Effect.ALLOW,
                actions=["cloudwatch:PutMetricData"],
                resources=["*"],
                conditions={
                    "StringEquals": {"cloudwatch:namespace": APPLICATION_METRIC_NAMESPACE},
                },
            )
        )

        return {
            "execution_role": execution_role,
            "task_role": task_role,
        }

    def _create_log_group(self) -> logs.LogGroup:
        return logs.LogGroup(
            self,
            "ServiceLogGroup",
            log_group_name=self.settings.log_group_name,
            retention=logs.RetentionDays.ONE_WEEK,
            removal_policy=cdk.RemovalPolicy.DESTROY,
        )

    def _create_ecs_cluster(self) -> ecs.Cluster:
        """Create ECS cluster."""
        return ecs.Cluster(
            self,
            "ECSCluster",
            cluster_name=self.settings.cluster_name,
            vpc=self.vpc,
            container_insights_v2=ecs.ContainerInsights.ENABLED,
        )

    def _create_application_load_balancer(self) -> elbv2.ApplicationLoadBalancer:
        """Create Application Load Balancer."""
        alb_security_group = ec2.SecurityGroup(
            self,
            "ALBSecurityGroup",
            vpc=self.vpc,
            description="Security group for Application Load Balancer",
            allow_all_outbound=True,
        )

        alb_security_group.add_ingress_rule(
            ec2.Peer.any_ipv4(),
            ec2.Port.tcp(self.settings.listener_port),
            "Allow HTTP from internet",
        )

        alb = elbv2.ApplicationLoadBalancer(
            self,
            "ApplicationLoadBalancer",
            vpc=self.vpc,
            internet_facing=True,
            security_group=alb_security_group,
            vpc_subnets=ec2.SubnetSelection(subnet_type=ec2.SubnetType.PUBLIC),
        )

        self.alb_security_group = alb_security_group

        return alb

    def _create_listener(self) -> tuple[elbv2.ApplicationTargetGroup, elbv2.ApplicationListener]:
        """Create the blue target group and the production listener that fronts it."""
        target_group = elbv2.ApplicationTargetGroup(
            self,
            "BlueTargetGroup",
            vpc=self.vpc,
            port=self.settings.container_port,
            protocol=elbv2.ApplicationProtocol.HTTP,
            target_type=elbv2.TargetType.IP,
            health_check=create_health_check(self.settings),
            deregistration_delay=cdk.Duration.seconds(10),
        )

        listener = self.alb.add_listener(
            "HTTPListener",
            port=self.settings.listener_port,
            protocol=elbv2.ApplicationProtocol.HTTP,
            default_target_groups=[target_group],
            open=False,
        )

        return target_group, listener

    def _create_service(self) -> ecs.FargateService:
        """Create the Fargate service; CodeDeploy owns task set replacement."""
        ecs_security_group = ec2.SecurityGroup(
            self,
            "ECSSecurityGroup",
            vpc=self.vpc,
            description="Security group for ECS tasks",
            allow_all_outbound=True,
        )

        ecs_security_group.add_ingress_rule(
            self.alb_security_group,
            ec2.Port.tcp(self.settings.container_port),
            "Allow traffic from ALB",
        )

        task_definition = ecs.FargateTaskDefinition(
            self,
            "TaskDefinition",
            family=self.settings.service_name,
            cpu=self.settings.task_cpu,
            memory_limit_mib=self.settings.task_memory_mib,
            execution_role=self.iam_roles["execution_role"],
            task_role=self.iam_roles["task_role"],
        )

        container = task_definition.add_container(
            self.settings.container_name,
            image=ecs.ContainerImage.from_ecr_repository(self.ecr_repository, self.settings.image_tag),
            logging=ecs.LogDriver.aws_logs(
                stream_prefix="ecs",
                log_group=self.log_group,
            ),
            environment={
                "PORT": str(self.settings.container_port),
                "METRIC_NAMESPACE": APPLICATION_METRIC_NAMESPACE,
            },
            health_check=ecs.HealthCheck(
                command=[
                    "CMD-SHELL",
                    f"curl -f http://localhost:{self.settings.container_port}"
                    f"{self.settings.health_check_path} || exit 1",
                ],
                interval=cdk.Duration.seconds(10),
                timeout=cdk.Duration.seconds(5),
                retries=3,
                start_period=cdk.Duration.seconds(30),
            ),
        )

        container.add_port_mappings(
            ecs.PortMapping(
                container_port=self.settings.container_port,
                protocol=ecs.Protocol.TCP,
            )
        )

        service = ecs.FargateService(
            self,
            "FargateService",
            service_name=self.settings.service_name,
            cluster=self.cluster,
            task_definition=task_definition,
            desired_count=self.desired_count,
            security_groups=[ecs_security_group],
            vpc_subnets=ec2.SubnetSelection(subnet_type=ec2.SubnetType.PRIVATE_WITH_EGRESS),
            assign_public_ip=False,
            health_check_grace_period=cdk.Duration.seconds(30),
            deployment_controller=ecs.DeploymentController(
                type=ecs.DeploymentControllerType.CODE_DEPLOY,
            ),
        )

        service.attach_to_application_target_group(self.blue_target_group)

        self.ecs_security_group = ecs_security_group

        return service

    def _create_alarm_topic(self) -> sns.Topic:
        topic = sns.Topic(
            self,
            "AlarmTopic",
            display_name="Fast Scaling Alarms",
        )
        if self.settings.alarm_email:
            topic.add_subscription(subscriptions.EmailSubscription(self.settings.alarm_email))
        return topic

    def _create_alarms(self) -> dict[str, cloudwatch.Alarm]:
        """Set up CloudWatch alarms for the service."""
        one_minute = cdk.Duration.minutes(1)

        alarms = {
            "high_cpu": cloudwatch.Alarm(
                self,
                "HighCpuAlarm",
                metric=self.service.metric_cpu_utilization(period=one_minute),
                threshold=80,
                evaluation_periods=2,
                alarm_description="Service CPU utilization is high",
            ),
            "high_memory": cloudwatch.Alarm(
                self,
                "HighMemoryAlarm",
                metric=self.service.metric_memory_utilization(period=one_minute),
                threshold=85,
                evaluation_periods=2,
                alarm_description="Service memory utilization is high",
            ),
            "high_request_rate": cloudwatch.Alarm(
                self,
                "HighRequestRateAlarm",
                metric=self.blue_target_group.metrics.request_count_per_target(period=one_minute),
                threshold=1000,
                evaluation_periods=1,
                alarm_description="Requests per target are high",
            ),
            "high_response_time": cloudwatch.Alarm(
                self,
                "HighResponseTimeAlarm",
                metric=self.alb.metrics.target_response_time(period=one_minute),
                threshold=1,
                evaluation_periods=2,
                alarm_description="Target response time is above one second",
            ),
            # Same metric and resolution as the RPS scale-out policy
            "custom_rps": cloudwatch.Alarm(
                self,
                "CustomRpsAlarm",
                metric=cloudwatch.Metric(
                    namespace=APPLICATION_METRIC_NAMESPACE,
                    metric_name="RequestsPerSecond",
                    statistic="Average",
                    period=cdk.Duration.seconds(10),
                ),
                threshold=100,
                comparison_operator=cloudwatch.ComparisonOperator.GREATER_THAN_OR_EQUAL_TO_THRESHOLD,
                evaluation_periods=1,
                alarm_description="Application requests per second crossed the scale-out threshold",
            ),
        }

        for alarm in alarms.values():
            alarm.add_alarm_action(cw_actions.SnsAction(self.alarm_topic))

        return alarms
