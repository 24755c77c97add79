"""
Thin helpers around the Authentik REST API (``<host>/api/v3/``).

Every call is bearer-token authenticated and exchanges JSON. Responses are
validated against the models in ``authentik_models`` so a shape mismatch fails
here instead of surfacing later as a missing attribute.
"""

import os
from typing import Any, Dict, Optional, Type, TypeVar
from urllib.parse import urlencode

import requests
from aws_lambda_powertools import Logger
from pydantic import BaseModel, ValidationError

from authentik_models import ListResult

logger = Logger(service="ldap-token-retriever")

API_PREFIX = "/api/v3"
MAX_ERROR_BODY_LENGTH = 500

ModelT = TypeVar("ModelT", bound=BaseModel)


class AuthentikApiError(Exception):
    """Raised for non-2xx responses and response bodies that fail validation."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


def request_timeout() -> float:
    return float(os.environ.get("REQUEST_TIMEOUT", "30"))


def api_url(base_url: str, path: str, **params: Any) -> str:
    """Build ``<base_url>/api/v3/<path>/`` with an optional query string."""
    url = f"{base_url.rstrip('/')}{API_PREFIX}/{path.strip('/')}/"
    if params:
        url = f"{url}?{urlencode(params)}"
    return url


def auth_headers(token: str) -> Dict[str, str]:
    return {
        "Authorization": f"Bearer {token}",
        "Accept": "application/json",
        "Content-Type": "application/json",
    }


def fetch_json(
    session: requests.Session,
    method: str,
    url: str,
    token: str,
    body: Optional[Dict[str, Any]] = None,
) -> Any:
    """
    Send a request and return the decoded JSON body.

    Raises AuthentikApiError for non-2xx statuses (status and a truncated body
    are embedded in the message) and for bodies that are not valid JSON.
    Network errors and timeouts propagate as requests exceptions.
    """
    response = session.request(
        method,
        url,
        headers=auth_headers(token),
        json=body,
        timeout=request_timeout(),
    )

    if not 200 <= response.status_code < 300:
        text = (response.text or "")[:MAX_ERROR_BODY_LENGTH]
        raise AuthentikApiError(
            f"HTTP error! status: {response.status_code} - {method} {url} - {text}",
            status_code=response.status_code,
        )

    try:
        return response.json()
    except ValueError as e:
        raise AuthentikApiError(
            f"Invalid JSON response from {method} {url}: {str(e)}",
            status_code=response.status_code,
        ) from e


def parse_model(model: Type[ModelT], data: Any, resource_name: str) -> ModelT:
    try:
        return model.model_validate(data)
    except ValidationError as e:
        raise AuthentikApiError(
            f"Unexpected {resource_name} response shape: {str(e)}"
        ) from e


def list_resources(
    session: requests.Session,
    url: str,
    token: str,
    model: Type[ModelT],
    resource_name: str,
) -> list:
    data = fetch_json(session, "GET", url, token)
    return parse_model(ListResult[model], data, resource_name).results


def get_or_create(
    session: requests.Session,
    list_url: str,
    create_url: str,
    body: Dict[str, Any],
    resource_name: str,
    token: str,
    model: Type[ModelT],
) -> ModelT:
    """
    Return the first match of a filtered list request, creating the resource
    when the list is empty.

    Concurrent invocations may race between the lookup and the create; there
    is no conflict handling.
    """
    existing = list_resources(session, list_url, token, model, resource_name)
    if existing:
        logger.info(
            f"Found existing {resource_name}",
            resource=resource_name,
            pk=str(existing[0].pk),
        )
        return existing[0]

    logger.info(f"Creating {resource_name}", resource=resource_name)
    created = fetch_json(session, "POST", create_url, token, body)
    result = parse_model(model, created, resource_name)
    logger.info(
        f"Created {resource_name}", resource=resource_name, pk=str(result.pk)
    )
    return result
