"""Shared fixtures for the LDAP token retriever Lambda tests."""

import itertools
import json
import os
import sys
import uuid
from urllib.parse import parse_qs, urlsplit

import pytest

# Add lambda/ldap_token_retriever to path for imports
sys.path.insert(
    0, os.path.join(os.path.dirname(__file__), "../../../lambda/ldap_token_retriever")
)

from retry_policy import logger  # noqa: E402

AUTHENTIK_HOST = "https://auth.example.com"
ADMIN_TOKEN = "admin-api-token"
OUTPOST_TOKEN = "outpost-bearer-token-value"

# Collections whose primary keys are integers in Authentik
INTEGER_PK_COLLECTIONS = {"core/users", "providers/ldap"}


class FakeResponse:
    def __init__(self, status_code, payload=None, text=None):
        self.status_code = status_code
        self._payload = payload
        self.text = text if text is not None else json.dumps(payload)

    def json(self):
        if self._payload is None:
            raise ValueError("No JSON object could be decoded")
        return self._payload


class FakeAuthentik:
    """
    In-memory stand-in for the Authentik REST API, used as a requests session.

    Records every call so tests can count lookups and creations.
    """

    def __init__(self, with_invalidation_flow=True, token_identifier_on_create=False):
        self.collections = {}
        self.tokens = {}
        self.calls = []
        self.failures = {}
        self.token_identifier_on_create = token_identifier_on_create
        self.outposts_without_token = set()
        self._ids = itertools.count(1)

        if with_invalidation_flow:
            self.collections["flows/instances"] = [
                {
                    "pk": str(uuid.uuid4()),
                    "slug": "default-invalidation-flow",
                    "name": "Default Invalidation Flow",
                    "designation": "invalidation",
                }
            ]

    def fail(self, method, path, status_code=500, text="Internal Server Error"):
        self.failures[(method, path)] = FakeResponse(status_code, text=text)

    def posts(self, path=None):
        return [
            call for call in self.calls if call[0] == "POST" and (path is None or call[1] == path)
        ]

    def requests_to(self, method, prefix):
        return [
            call for call in self.calls if call[0] == method and call[1].startswith(prefix)
        ]

    def _new_pk(self, collection):
        if collection in INTEGER_PK_COLLECTIONS:
            return next(self._ids)
        return str(uuid.uuid4())

    def request(self, method, url, headers=None, json=None, timeout=None):
        parts = urlsplit(url)
        assert parts.path.startswith("/api/v3/")
        assert headers["Authorization"] == f"Bearer {ADMIN_TOKEN}"
        path = parts.path[len("/api/v3/"):].strip("/")
        query = {key: values[0] for key, values in parse_qs(parts.query).items()}
        self.calls.append((method, path, query, json))

        if (method, path) in self.failures:
            return self.failures[(method, path)]

        if path.startswith("core/tokens/") and path.endswith("/view_key"):
            identifier = path.split("/")[2]
            if identifier not in self.tokens:
                return FakeResponse(404, text='{"detail": "Not found."}')
            return FakeResponse(200, {"key": self.tokens[identifier]})

        collection, _, pk = path.rpartition("/")
        if collection in self.collections or collection in INTEGER_PK_COLLECTIONS:
            return self._detail(method, collection, pk, json)

        if method == "GET":
            return FakeResponse(200, {"results": self._filter(path, query)})
        if method == "POST":
            return self._create(path, json)
        return FakeResponse(405, text="Method not allowed")

    def _filter(self, collection, query):
        results = []
        for item in self.collections.get(collection, []):
            matched = True
            for key, value in query.items():
                if key.endswith("__iexact"):
                    field = key[: -len("__iexact")]
                    matched = str(item.get(field, "")).lower() == value.lower()
                else:
                    matched = str(item.get(key)) == value
                if not matched:
                    break
            if matched:
                results.append(self._visible(collection, item))
        return results

    def _visible(self, collection, item):
        if collection == "outposts/instances" and item["pk"] in self.outposts_without_token:
            return {key: value for key, value in item.items() if key != "token_identifier"}
        return dict(item)

    def _create(self, collection, body):
        item = dict(body)
        item["pk"] = self._new_pk(collection)
        self.collections.setdefault(collection, []).append(item)

        if collection == "outposts/instances":
            identifier = f"ak-outpost-{item['pk']}-api"
            item["token_identifier"] = identifier
            self.tokens[identifier] = OUTPOST_TOKEN
            if not self.token_identifier_on_create:
                # Authentik fills the identifier in after the create returns
                return FakeResponse(
                    201, {key: value for key, value in item.items() if key != "token_identifier"}
                )

        return FakeResponse(201, dict(item))

    def _detail(self, method, collection, pk, body):
        for item in self.collections.get(collection, []):
            if str(item["pk"]) == pk:
                if method == "PATCH":
                    item.update(body)
                return FakeResponse(200, self._visible(collection, item))
        return FakeResponse(404, text='{"detail": "Not found."}')


@pytest.fixture
def authentik():
    return FakeAuthentik()


@pytest.fixture
def retry_env():
    """Set up retry environment variables."""
    os.environ["MAX_RETRIES"] = "2"
    os.environ["BASE_DELAY_MS"] = "10"
    os.environ["MAX_DELAY_MS"] = "40"
    yield
    # Cleanup
    os.environ.pop("MAX_RETRIES", None)
    os.environ.pop("BASE_DELAY_MS", None)
    os.environ.pop("MAX_DELAY_MS", None)


class _CurrentStdout:
    """Forward writes to whatever sys.stdout is when the record is emitted."""

    def write(self, data):
        return sys.stdout.write(data)

    def flush(self):
        sys.stdout.flush()


@pytest.fixture
def log_entries(capsys):
    """Send the JSON log output to the captured stdout and parse it on demand."""
    log_handler = logger.registered_handler
    previous_stream = log_handler.stream
    # Assign directly: setStream() flushes the old stream, which pytest may have closed
    log_handler.stream = _CurrentStdout()

    def read():
        output = capsys.readouterr().out
        return [json.loads(line) for line in output.splitlines() if line.startswith("{")]

    yield read
    log_handler.stream = previous_stream
