#!/usr/bin/env python3
"""
CDK app for the Authentik LDAP token retriever.

Usage:
    cdk deploy --app "python3 app.py"

Or set environment variables:
    ENVIRONMENT=prod AUTHENTIK_HOST=https://auth.example.com \
    ADMIN_TOKEN_SECRET_ARN=... LDAP_TOKEN_SECRET_ARN=... cdk deploy --app "python3 app.py"
"""
import os

import aws_cdk as cdk

from auth_infra.ldap_token_retriever_stack import LdapTokenRetrieverStack

app = cdk.App()

environment_name = os.environ.get("ENVIRONMENT", "dev-test")

# Get region from environment or use default
region = os.environ.get("AWS_REGION", os.environ.get("CDK_DEFAULT_REGION"))

LdapTokenRetrieverStack(
    app,
    f"TAK-{environment_name}-AuthInfra-LdapToken",
    environment_name=environment_name,
    description="Retrieves the Authentik LDAP outpost token into Secrets Manager",
    env=cdk.Environment(
        account=os.getenv("CDK_DEFAULT_ACCOUNT"),
        region=region,
    ),
)

app.synth()
