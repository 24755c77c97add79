"""
Idempotent setup of the Authentik LDAP outpost and retrieval of its token.

Every resource is looked up by its natural key before it is created, so the
sequence can be re-run after a partial failure. Flow bindings have no natural
key and are matched by scanning the bindings of the authentication flow.
"""

import secrets
from dataclasses import dataclass
from typing import Optional

import requests
from aws_lambda_powertools import Logger

from authentik_client import (
    api_url,
    fetch_json,
    get_or_create,
    list_resources,
    parse_model,
)
from authentik_models import (
    Application,
    Flow,
    FlowBinding,
    LdapProvider,
    Outpost,
    Stage,
    TokenViewKey,
    User,
)

logger = Logger(service="ldap-token-retriever")

SERVICE_ACCOUNT_USERNAME = "ldapservice"
INVALIDATION_FLOW_SLUG = "default-invalidation-flow"
AUTHENTICATION_FLOW_SLUG = "ldap-authentication-flow"
IDENTIFICATION_STAGE_NAME = "ldap-identification-stage"
LOGIN_STAGE_NAME = "ldap-authentication-login"
PROVIDER_NAME = "LDAP"
APPLICATION_NAME = "LDAP"
APPLICATION_SLUG = "ldap"

IDENTIFICATION_BINDING_ORDER = 10
LOGIN_BINDING_ORDER = 30
GID_START_NUMBER = 4000
UID_START_NUMBER = 2000


class MissingPreconditionError(Exception):
    """Raised when the outpost or token lacks a field required to continue."""


@dataclass(frozen=True)
class StepOutcome:
    """Result of a step whose failure is reported but does not stop the setup."""

    step: str
    warning: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.warning is None


def ensure_service_account(session, base_url, token) -> User:
    return get_or_create(
        session,
        api_url(base_url, "core/users", username=SERVICE_ACCOUNT_USERNAME),
        api_url(base_url, "core/users"),
        {
            "username": SERVICE_ACCOUNT_USERNAME,
            "name": "LDAP Service Account",
            "type": "service_account",
            "is_active": True,
            "password": secrets.token_urlsafe(32),
        },
        "service account",
        token,
        User,
    )


def find_invalidation_flow(session, base_url, token) -> Optional[Flow]:
    """Look up the built-in invalidation flow; it is never created here."""
    flows = list_resources(
        session,
        api_url(base_url, "flows/instances", slug=INVALIDATION_FLOW_SLUG),
        token,
        Flow,
        "flow",
    )
    for flow in flows:
        if flow.slug == INVALIDATION_FLOW_SLUG:
            return flow

    logger.warning(
        "Invalidation flow not found, provider will be created without it",
        slug=INVALIDATION_FLOW_SLUG,
    )
    return None


def ensure_authentication_flow(session, base_url, token) -> Flow:
    return get_or_create(
        session,
        api_url(base_url, "flows/instances", slug=AUTHENTICATION_FLOW_SLUG),
        api_url(base_url, "flows/instances"),
        {
            "name": AUTHENTICATION_FLOW_SLUG,
            "slug": AUTHENTICATION_FLOW_SLUG,
            "title": AUTHENTICATION_FLOW_SLUG,
            "designation": "authentication",
            "authentication": "require_outpost",
            "denied_action": "message_continue",
            "layout": "stacked",
            "policy_engine_mode": "any",
        },
        "authentication flow",
        token,
        Flow,
    )


def ensure_identification_stage(session, base_url, token) -> Stage:
    return get_or_create(
        session,
        api_url(base_url, "stages/identification", name=IDENTIFICATION_STAGE_NAME),
        api_url(base_url, "stages/identification"),
        {
            "name": IDENTIFICATION_STAGE_NAME,
            "case_insensitive_matching": True,
            "pretend_user_exists": True,
            "show_matched_user": True,
            "user_fields": ["username", "email"],
        },
        "identification stage",
        token,
        Stage,
    )


def ensure_login_stage(session, base_url, token) -> Stage:
    return get_or_create(
        session,
        api_url(base_url, "stages/user_login", name=LOGIN_STAGE_NAME),
        api_url(base_url, "stages/user_login"),
        {
            "name": LOGIN_STAGE_NAME,
            "geoip_binding": "bind_continent",
            "network_binding": "bind_asn",
            "remember_me_offset": "seconds=0",
            "session_duration": "seconds=0",
        },
        "login stage",
        token,
        Stage,
    )


def _binding_body(flow: Flow, stage: Stage, order: int) -> dict:
    return {
        "target": flow.pk,
        "stage": stage.pk,
        "order": order,
        "evaluate_on_plan": True,
        "invalid_response_action": "retry",
        "policy_engine_mode": "any",
        "re_evaluate_policies": True,
    }


def ensure_flow_bindings(
    session, base_url, token, flow: Flow, identification: Stage, login: Stage
) -> StepOutcome:
    """
    Bind the identification (order 10) and login (order 30) stages to the flow.

    Errors are returned as a warning instead of raised.
    """
    try:
        bindings = list_resources(
            session,
            api_url(base_url, "flows/bindings", target=flow.pk),
            token,
            FlowBinding,
            "flow binding",
        )
        bound_stages = {str(binding.stage) for binding in bindings}

        for stage, order in (
            (identification, IDENTIFICATION_BINDING_ORDER),
            (login, LOGIN_BINDING_ORDER),
        ):
            if str(stage.pk) in bound_stages:
                logger.info("Flow binding already exists", stage=stage.name)
                continue

            logger.info("Creating flow binding", stage=stage.name, order=order)
            fetch_json(
                session,
                "POST",
                api_url(base_url, "flows/bindings"),
                token,
                _binding_body(flow, stage, order),
            )
    except Exception as e:
        return StepOutcome("flow bindings", warning=str(e))

    return StepOutcome("flow bindings")


def ensure_ldap_provider(
    session, base_url, token, flow: Flow, invalidation_flow: Optional[Flow], base_dn
) -> LdapProvider:
    body = {
        "name": PROVIDER_NAME,
        "authorization_flow": flow.pk,
        "authentication_flow": flow.pk,
        "bind_mode": "cached",
        "search_mode": "cached",
        "base_dn": base_dn,
        "gid_start_number": GID_START_NUMBER,
        "uid_start_number": UID_START_NUMBER,
        "mfa_support": True,
    }
    if invalidation_flow is not None:
        body["invalidation_flow"] = invalidation_flow.pk

    return get_or_create(
        session,
        api_url(base_url, "providers/ldap", name=PROVIDER_NAME),
        api_url(base_url, "providers/ldap"),
        body,
        "LDAP provider",
        token,
        LdapProvider,
    )


def set_provider_search_group(
    session, base_url, token, provider: LdapProvider, service_account: User
) -> StepOutcome:
    try:
        fetch_json(
            session,
            "PATCH",
            api_url(base_url, f"providers/ldap/{provider.pk}"),
            token,
            {"search_group": service_account.pk},
        )
    except Exception as e:
        return StepOutcome("provider search group", warning=str(e))

    return StepOutcome("provider search group")


def ensure_application(session, base_url, token, provider: LdapProvider) -> Application:
    return get_or_create(
        session,
        api_url(base_url, "core/applications", slug=APPLICATION_SLUG),
        api_url(base_url, "core/applications"),
        {
            "name": APPLICATION_NAME,
            "slug": APPLICATION_SLUG,
            "provider": provider.pk,
            "policy_engine_mode": "any",
        },
        "application",
        token,
        Application,
    )


def ensure_outpost(
    session, base_url, token, outpost_name, provider: LdapProvider
) -> Outpost:
    return get_or_create(
        session,
        api_url(base_url, "outposts/instances", name__iexact=outpost_name),
        api_url(base_url, "outposts/instances"),
        {
            "name": outpost_name,
            "type": "ldap",
            "providers": [provider.pk],
            "config": {"authentik_host": base_url},
        },
        "outpost",
        token,
        Outpost,
    )


def _log_outcome(outcome: StepOutcome) -> None:
    if not outcome.ok:
        logger.warning(
            f"Continuing after {outcome.step} failure",
            step=outcome.step,
            warning=outcome.warning,
        )


def ensure_ldap_outpost(
    session: requests.Session,
    base_url: str,
    token: str,
    outpost_name: str,
    base_dn: str,
) -> Outpost:
    """
    Create, or find, everything the LDAP outpost depends on and return the outpost.

    Order: service account, flows, stages, bindings, provider, provider search
    group, application, outpost. Binding and search group failures are logged
    as warnings and do not stop the sequence.
    """
    service_account = ensure_service_account(session, base_url, token)
    invalidation_flow = find_invalidation_flow(session, base_url, token)
    flow = ensure_authentication_flow(session, base_url, token)
    identification = ensure_identification_stage(session, base_url, token)
    login = ensure_login_stage(session, base_url, token)

    _log_outcome(
        ensure_flow_bindings(session, base_url, token, flow, identification, login)
    )

    provider = ensure_ldap_provider(
        session, base_url, token, flow, invalidation_flow, base_dn
    )
    _log_outcome(
        set_provider_search_group(session, base_url, token, provider, service_account)
    )

    ensure_application(session, base_url, token, provider)
    return ensure_outpost(session, base_url, token, outpost_name, provider)


def retrieve_outpost_token(
    session: requests.Session, base_url: str, token: str, outpost: Outpost
) -> str:
    """
    Return the raw bearer token of the outpost.

    Authentik fills in ``token_identifier`` asynchronously after creation, so
    the outpost is fetched again once when it is missing.
    """
    token_identifier = outpost.token_identifier
    if not token_identifier:
        logger.info(
            "Outpost has no token identifier yet, refreshing", outpost=outpost.name
        )
        data = fetch_json(
            session,
            "GET",
            api_url(base_url, f"outposts/instances/{outpost.pk}"),
            token,
        )
        token_identifier = parse_model(Outpost, data, "outpost").token_identifier

    if not token_identifier:
        raise MissingPreconditionError("Outpost token_identifier not available")

    data = fetch_json(
        session,
        "GET",
        api_url(base_url, f"core/tokens/{token_identifier}/view_key"),
        token,
    )
    view_key = parse_model(TokenViewKey, data, "token view key")
    if not view_key.key:
        raise MissingPreconditionError(
            f"Token view_key response for {token_identifier} did not include a key"
        )

    logger.info("Retrieved outpost token", outpost=outpost.name)
    return view_key.key
