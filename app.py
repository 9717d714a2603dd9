#!/usr/bin/env python3
"""CDK App entry point for the fast-scaling ECS Fargate infrastructure."""

import logging

import aws_cdk as cdk

from infrastructure.config import settings
from infrastructure.deployment import build_stacks

logging.basicConfig(level=settings.log_level)

app = cdk.App()

build_stacks(app, settings)

app.synth()
