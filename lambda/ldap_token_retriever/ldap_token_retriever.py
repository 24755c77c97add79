"""
LDAP Token Retriever Lambda Function

CloudFormation custom resource, run through the CDK provider framework, that
makes sure the Authentik LDAP outpost is configured and copies its bearer
token into AWS Secrets Manager, so the LDAP outpost service can start with a
valid token.

Resource properties:
    - Environment: deployment environment label
    - AuthentikHost: base URL of the Authentik server
    - OutpostName: name of the LDAP outpost (default: LDAP)
    - AdminSecretName: secret holding the Authentik admin API token
    - LDAPSecretName: secret that receives the outpost token
    - LDAPBaseDN: base DN served by the outpost (default: DC=example,DC=com)

Environment Variables:
    - MAX_RETRIES, BASE_DELAY_MS, BACKOFF_MULTIPLIER, MAX_DELAY_MS: retry policy
    - REQUEST_TIMEOUT: Authentik request timeout in seconds (default: 30)
    - LOG_LEVEL: log level (default: INFO)
"""

import json
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

import boto3
import requests
from aws_lambda_powertools import Logger
from aws_lambda_powertools.utilities.typing import LambdaContext

from ldap_bootstrap import ensure_ldap_outpost, retrieve_outpost_token
from retry_policy import RetryConfig, with_retry

logger = Logger(service="ldap-token-retriever")

SUCCESS = "SUCCESS"
FAILED = "FAILED"

DEFAULT_OUTPOST_NAME = "LDAP"
DEFAULT_BASE_DN = "DC=example,DC=com"
TOKEN_PREVIEW_LENGTH = 10


@dataclass
class LifecycleResult:
    """Outcome of a lifecycle event, independent of how it is reported back."""

    status: str
    data: Dict[str, Any] = field(default_factory=dict)
    reason: Optional[str] = None


def get_secrets_client():
    """Get Secrets Manager client (lazy initialization for testing)."""
    return boto3.client("secretsmanager")


def get_admin_token(secrets_client, secret_id: str) -> str:
    """
    Read the Authentik admin API token.

    The secret is either the raw token or a JSON document with a "token" field.
    """
    response = secrets_client.get_secret_value(SecretId=secret_id)
    secret_string = response.get("SecretString")
    if not secret_string:
        raise ValueError(f"Secret {secret_id} has no SecretString value")

    try:
        parsed = json.loads(secret_string)
    except ValueError:
        return secret_string

    if isinstance(parsed, dict) and parsed.get("token"):
        return parsed["token"]
    return secret_string


def put_ldap_token(secrets_client, secret_id: str, token: str) -> None:
    secrets_client.put_secret_value(SecretId=secret_id, SecretString=token)
    logger.info("LDAP token secret updated", secret_id=secret_id)


def _elapsed_ms(start: float) -> int:
    return int((time.time() - start) * 1000)


def process_event(
    event: Dict[str, Any],
    secrets_client=None,
    session: Optional[requests.Session] = None,
    retry_config: Optional[RetryConfig] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> LifecycleResult:
    """
    Handle a Create, Update or Delete lifecycle event.

    Create and Update run the same idempotent setup. Delete leaves the Authentik
    resources and the secret untouched. Failures are returned as a FAILED
    result rather than raised.
    """
    start = time.time()
    request_type = event.get("RequestType")
    properties = event.get("ResourceProperties", {})

    if request_type == "Delete":
        logger.info("Delete request - no action needed for LDAP token retrieval")
        return LifecycleResult(SUCCESS, {"Message": "Delete completed"})

    if request_type not in ("Create", "Update"):
        message = f"Unexpected request type: {request_type}"
        logger.error(message)
        return LifecycleResult(
            FAILED,
            {"Message": message, "ErrorType": "ValueError", "ElapsedMs": _elapsed_ms(start)},
            reason=message,
        )

    outpost_name = properties.get("OutpostName") or DEFAULT_OUTPOST_NAME
    base_dn = properties.get("LDAPBaseDN") or DEFAULT_BASE_DN
    log_context = {
        "environment": properties.get("Environment"),
        "outpost_name": outpost_name,
    }

    try:
        retry_config = retry_config or RetryConfig.from_env()
        authentik_host = properties["AuthentikHost"]
        admin_secret_name = properties["AdminSecretName"]
        ldap_secret_name = properties["LDAPSecretName"]

        logger.info(
            "Processing LDAP token retrieval",
            request_type=request_type,
            authentik_host=authentik_host,
            admin_secret_name=admin_secret_name,
            ldap_secret_name=ldap_secret_name,
            base_dn=base_dn,
            **log_context,
        )

        secrets_client = secrets_client or get_secrets_client()
        session = session or requests.Session()

        admin_token = with_retry(
            lambda: get_admin_token(secrets_client, admin_secret_name),
            "get admin token",
            log_context,
            retry_config,
            sleep,
        )

        def bootstrap_and_retrieve() -> str:
            outpost = ensure_ldap_outpost(
                session, authentik_host, admin_token, outpost_name, base_dn
            )
            return retrieve_outpost_token(session, authentik_host, admin_token, outpost)

        ldap_token = with_retry(
            bootstrap_and_retrieve,
            "configure outpost and retrieve token",
            log_context,
            retry_config,
            sleep,
        )

        with_retry(
            lambda: put_ldap_token(secrets_client, ldap_secret_name, ldap_token),
            "update LDAP token secret",
            log_context,
            retry_config,
            sleep,
        )
    except Exception as e:
        elapsed = _elapsed_ms(start)
        logger.exception(
            "LDAP token retrieval failed",
            error_type=type(e).__name__,
            elapsed_ms=elapsed,
            **log_context,
        )
        return LifecycleResult(
            FAILED,
            {"Message": str(e), "ErrorType": type(e).__name__, "ElapsedMs": elapsed},
            reason=str(e),
        )

    elapsed = _elapsed_ms(start)
    logger.info("LDAP token retrieval completed", elapsed_ms=elapsed, **log_context)
    return LifecycleResult(
        SUCCESS,
        {
            "Message": "LDAP token retrieved and updated successfully",
            "OutpostName": outpost_name,
            "LDAPToken": ldap_token[:TOKEN_PREVIEW_LENGTH] + "...",
            "ElapsedMs": elapsed,
        },
    )



class LdapTokenRetrievalError(Exception):
    """A Create or Update that could not be completed."""


@logger.inject_lambda_context()
def handler(event: Dict[str, Any], context: LambdaContext) -> Dict[str, Any]:
    """
    Lambda handler for the LDAP token custom resource.

    Invoked through the CDK custom resource provider framework, which sends
    the CloudFormation response: returned Data becomes the resource attributes
    and a raised error becomes a FAILED response with the error as the reason.

    Args:
        event: CloudFormation custom resource event
        context: Lambda context object

    Returns:
        The resource attributes for CloudFormation
    """
    result = process_event(event)

    if result.status == FAILED:
        raise LdapTokenRetrievalError(
            f"{result.reason} (ErrorType: {result.data.get('ErrorType')}, "
            f"ElapsedMs: {result.data.get('ElapsedMs')})"
        )

    return {"Data": result.data}
