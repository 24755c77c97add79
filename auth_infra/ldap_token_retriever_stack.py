import os

from aws_cdk import CfnOutput, CustomResource, Duration, Stack
from aws_cdk import (
    aws_cloudwatch as cloudwatch,
)
from aws_cdk import (
    aws_cloudwatch_actions as actions,
)
from aws_cdk import (
    aws_lambda as _lambda,
)
from aws_cdk import (
    aws_logs as logs,
)
from aws_cdk import aws_kms as kms
from aws_cdk import aws_secretsmanager as secretsmanager
from aws_cdk import (
    aws_sns as sns,
)
from aws_cdk.aws_lambda_python_alpha import PythonFunction
from aws_cdk.custom_resources import Provider
from constructs import Construct

from auth_infra.environment_config import EnvironmentConfig, get_environment_config


class LdapTokenRetrieverStack(Stack):
    """
    Deploys the Lambda-backed custom resource that configures the Authentik
    LDAP outpost and stores its token in Secrets Manager.

    The custom resource re-runs on every deployment because its properties
    include the git SHA.
    """

    def __init__(
        self,
        scope: Construct,
        construct_id: str,
        environment_name: str = None,
        config: EnvironmentConfig = None,
        **kwargs,
    ) -> None:
        super().__init__(scope, construct_id, **kwargs)

        environment_name = environment_name or os.environ.get("ENVIRONMENT", "dev-test")
        config = config or get_environment_config(environment_name)

        # Deployment inputs are read from environment variables
        authentik_host = os.environ.get("AUTHENTIK_HOST", "https://auth.example.com")
        outpost_name = os.environ.get("OUTPOST_NAME", "LDAP")
        ldap_base_dn = os.environ.get("LDAP_BASE_DN", "DC=example,DC=com")
        git_sha = os.environ.get("GIT_SHA", "development")
        notification_email_value = os.environ.get("NOTIFICATION_EMAIL")

        # Both secrets must exist before deployment
        admin_token_secret_arn = os.environ.get(
            "ADMIN_TOKEN_SECRET_ARN",
            "arn:aws:secretsmanager:REGION:ACCOUNT_ID:secret:authentik-admin-token-XXXXXX",
        )
        ldap_token_secret_arn = os.environ.get(
            "LDAP_TOKEN_SECRET_ARN",
            "arn:aws:secretsmanager:REGION:ACCOUNT_ID:secret:authentik-ldap-token-XXXXXX",
        )

        # Customer-managed key the secrets are encrypted with, if any
        secrets_kms_key_arn = os.environ.get("SECRETS_KMS_KEY_ARN")
        secrets_key = (
            kms.Key.from_key_arn(self, "SecretsKey", secrets_kms_key_arn)
            if secrets_kms_key_arn
            else None
        )

        admin_token_secret = secretsmanager.Secret.from_secret_attributes(
            self,
            "AdminTokenSecret",
            secret_complete_arn=admin_token_secret_arn,
            encryption_key=secrets_key,
        )

        ldap_token_secret = secretsmanager.Secret.from_secret_attributes(
            self,
            "LdapTokenSecret",
            secret_complete_arn=ldap_token_secret_arn,
            encryption_key=secrets_key,
        )

        log_group = logs.LogGroup(
            self,
            "LdapTokenRetrieverLogs",
            log_group_name=f"/aws/lambda/TAK-{environment_name}-AuthInfra-update-ldap-token",
            retention=config.log_retention,
            removal_policy=config.removal_policy,
        )

        retriever_lambda = PythonFunction(
            self,
            "LdapTokenRetrieverFunction",
            function_name=f"TAK-{environment_name}-AuthInfra-update-ldap-token",
            entry="lambda/ldap_token_retriever",
            handler="handler",
            runtime=_lambda.Runtime.PYTHON_3_13,
            index="ldap_token_retriever.py",
            environment={
                "MAX_RETRIES": str(config.max_retries),
                "BASE_DELAY_MS": str(config.base_delay_ms),
                "BACKOFF_MULTIPLIER": str(config.backoff_multiplier),
                "MAX_DELAY_MS": str(config.max_delay_ms),
                "LOG_LEVEL": "INFO",
                "POWERTOOLS_SERVICE_NAME": "ldap-token-retriever",
            },
            log_group=log_group,
            timeout=config.lambda_timeout,
        )

        # Grant Lambda permissions to read the admin token and write the LDAP token;
        # with an encryption key this includes kms:Decrypt and kms:GenerateDataKey
        admin_token_secret.grant_read(retriever_lambda)
        ldap_token_secret.grant_read(retriever_lambda)
        ldap_token_secret.grant_write(retriever_lambda)

        provider_log_group = logs.LogGroup(
            self,
            "LdapTokenRetrieverProviderLogs",
            retention=config.log_retention,
            removal_policy=config.removal_policy,
        )

        # The provider framework sends the CloudFormation response for the function
        provider = Provider(
            self,
            "LdapTokenRetrieverProvider",
            on_event_handler=retriever_lambda,
            log_group=provider_log_group,
        )

        CustomResource(
            self,
            "LdapTokenRetrieverResource",
            service_token=provider.service_token,
            properties={
                "Environment": environment_name,
                "AuthentikHost": authentik_host,
                "OutpostName": outpost_name,
                "AdminSecretName": admin_token_secret.secret_arn,
                "LDAPSecretName": ldap_token_secret.secret_arn,
                "LDAPBaseDN": ldap_base_dn,
                "UpdateTimestamp": git_sha,
            },
        )

        CfnOutput(
            self,
            "LdapTokenRetrieverFunctionName",
            value=retriever_lambda.function_name,
            description="Name of the Lambda function that refreshes the LDAP outpost token",
        )

        CfnOutput(
            self,
            "LdapTokenSecretArn",
            value=ldap_token_secret.secret_arn,
            description="ARN of the secret holding the LDAP outpost token",
        )

        # Alarms are only created when enabled for the environment and someone is listening
        if config.enable_alarms and notification_email_value:
            notification_topic = sns.Topic(
                self,
                "LdapTokenRetrieverNotificationTopic",
                display_name="LDAP Token Retriever Notifications",
            )

            sns.Subscription(
                self,
                "EmailSubscription",
                endpoint=notification_email_value,
                protocol=sns.SubscriptionProtocol.EMAIL,
                topic=notification_topic,
            )

            self._create_lambda_alarms(
                retriever_lambda,
                "LdapTokenRetriever",
                notification_topic,
                Duration.millis(int(config.lambda_timeout.to_milliseconds() * 0.8)),
            )

    def _create_lambda_alarms(
        self,
        lambda_function: _lambda.Function,
        function_name: str,
        notification_topic: sns.Topic,
        duration_threshold: Duration,
    ) -> None:
        """Create CloudWatch alarms for a Lambda function."""

        # Error rate alarm
        error_alarm = cloudwatch.Alarm(
            self,
            f"{function_name}ErrorAlarm",
            alarm_name=f"{function_name} Lambda Errors",
            alarm_description=f"Alarm when {function_name} Lambda has errors",
            metric=lambda_function.metric_errors(),
            threshold=1,
            evaluation_periods=1,
            treat_missing_data=cloudwatch.TreatMissingData.NOT_BREACHING,
        )
        error_alarm.add_alarm_action(actions.SnsAction(notification_topic))
        error_alarm.add_ok_action(actions.SnsAction(notification_topic))

        # Duration alarm (80% of timeout)
        duration_alarm = cloudwatch.Alarm(
            self,
            f"{function_name}DurationAlarm",
            alarm_name=f"{function_name} Lambda Duration",
            alarm_description=f"Alarm when {function_name} Lambda duration exceeds threshold",
            metric=lambda_function.metric_duration(),
            threshold=duration_threshold.to_milliseconds(),
            evaluation_periods=1,
            treat_missing_data=cloudwatch.TreatMissingData.NOT_BREACHING,
        )
        duration_alarm.add_alarm_action(actions.SnsAction(notification_topic))
        duration_alarm.add_ok_action(actions.SnsAction(notification_topic))

        # Throttle alarm
        throttle_alarm = cloudwatch.Alarm(
            self,
            f"{function_name}ThrottleAlarm",
            alarm_name=f"{function_name} Lambda Throttles",
            alarm_description=f"Alarm when {function_name} Lambda is throttled",
            metric=lambda_function.metric_throttles(),
            threshold=1,
            evaluation_periods=1,
            treat_missing_data=cloudwatch.TreatMissingData.NOT_BREACHING,
        )
        throttle_alarm.add_alarm_action(actions.SnsAction(notification_topic))
        throttle_alarm.add_ok_action(actions.SnsAction(notification_topic))
