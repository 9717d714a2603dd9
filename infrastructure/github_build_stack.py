"""Standalone GitHub build project.

Builds and pushes the application image straight from GitHub without the
full pipeline. There is no webhook: builds are started manually.
"""

import logging

import aws_cdk as cdk
from aws_cdk import (
    aws_codebuild as codebuild,
    aws_ecr as ecr,
)
from constructs import Construct

from infrastructure.config import Settings
from infrastructure.pipeline_stack import create_build_environment

logger = logging.getLogger(__name__)


class GitHubBuildStack(cdk.Stack):
    """CodeBuild project sourced from GitHub that pushes to the existing ECR repository."""

    def __init__(
        self,
        scope: Construct,
        construct_id: str,
        settings: Settings,
        **kwargs,
    ) -> None:
        super().__init__(scope, construct_id, **kwargs)

        self.ecr_repository = ecr.Repository.from_repository_name(
            self, "ExistingRepo", settings.ecr_repository_name
        )

        self.build_project = codebuild.Project(
            self,
            "FastScalingBuild",
            project_name=settings.github_build_project_name,
            source=codebuild.Source.git_hub(
                owner=settings.github_owner,
                repo=settings.github_repo,
                branch_or_ref=settings.github_branch,
                webhook=False,
            ),
            environment=create_build_environment(self, self.ecr_repository, settings.container_name),
            build_spec=codebuild.BuildSpec.from_source_filename("buildspec.yml"),
        )

        self.ecr_repository.grant_pull_push(self.build_project)

        cdk.CfnOutput(
            self,
            "GitHubRepo",
            value=settings.github_url,
            description="GitHub Repository URL",
        )

        cdk.CfnOutput(
            self,
            "CodeBuildProject",
            value=self.build_project.project_name,
            description="CodeBuild Project Name",
        )

        cdk.CfnOutput(
            self,
            "ECRRepoUri",
            value=self.ecr_repository.repository_uri,
            description="ECR Repository URI",
        )

        logger.info(f"GitHub build stack {construct_id}: {settings.github_build_project_name}")
