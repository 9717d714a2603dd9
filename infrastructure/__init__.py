"""CDK stacks for the fast-scaling ECS Fargate service and its release pipeline."""
