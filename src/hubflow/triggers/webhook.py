# src/hubflow/triggers/webhook.py
"""Webhook trigger authentication and request-to-records conversion.

Definitions never hold secret material, only secret codes. Codes are
resolved at request time through a SecretResolver.

Schemes:
    NONE     no check (accepted with a warning)
    API_KEY  header value, optional prefix stripped, against the secret
    HMAC     hex HMAC-SHA256/SHA512 of the raw body bytes
    BASIC    ``Authorization: Basic base64(username:password)`` against
             the secret ``username:password``
    JWT      HS256 bearer token, with ``exp``/``nbf`` checks

Every comparison with secret-derived material is timing-safe.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import os
import re
import threading
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

import structlog

from hubflow.contracts.definition import WebhookTrigger
from hubflow.contracts.enums import HmacAlgorithm, WebhookAuth
from hubflow.contracts.results import Record
from hubflow.core.rate_limit import RequestRateLimiter

slog = structlog.get_logger(__name__)

MAX_API_KEY_LENGTH = 512
MAX_SIGNATURE_LENGTH = 256
MAX_JWT_HEADER_LENGTH = 16384
IDEMPOTENCY_HEADER = "x-idempotency-key"

_DIGESTS = {HmacAlgorithm.SHA256: hashlib.sha256, HmacAlgorithm.SHA512: hashlib.sha512}


class WebhookAuthenticationError(Exception):
    """Webhook request refused. ``status`` is the HTTP status a transport should answer with."""

    def __init__(self, message: str, status: int = 401) -> None:
        super().__init__(message)
        self.message = message
        self.status = status


@runtime_checkable
class SecretResolver(Protocol):
    """Resolves a secret code to its value; None when unknown."""

    def resolve(self, secret_code: str) -> str | None: ...


class InMemorySecretResolver:
    """Secrets held in a dict. For tests and embedded use."""

    def __init__(self, secrets: Mapping[str, str] | None = None) -> None:
        self._secrets = dict(secrets or {})

    def set(self, secret_code: str, value: str) -> None:
        self._secrets[secret_code] = value

    def resolve(self, secret_code: str) -> str | None:
        return self._secrets.get(secret_code)


class EnvSecretResolver:
    """Secrets from environment variables.

    ``orders-hmac`` resolves ``HUBFLOW_SECRET_ORDERS_HMAC`` with the default prefix.
    """

    def __init__(self, prefix: str = "HUBFLOW_SECRET_", environ: Mapping[str, str] | None = None) -> None:
        self._prefix = prefix
        self._environ = environ if environ is not None else os.environ

    def variable_name(self, secret_code: str) -> str:
        return self._prefix + re.sub(r"[^A-Za-z0-9]", "_", secret_code).upper()

    def resolve(self, secret_code: str) -> str | None:
        return self._environ.get(self.variable_name(secret_code))


def timing_safe_equal(expected: str, provided: str) -> bool:
    """Constant-time string comparison over UTF-8 bytes; unequal lengths never match."""
    return hmac.compare_digest(expected.encode("utf-8"), provided.encode("utf-8"))


def _b64url_decode(segment: str) -> bytes:
    return base64.urlsafe_b64decode(segment + "=" * (-len(segment) % 4))


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def sign_hs256(header_b64: str, payload_b64: str, secret: str) -> str:
    """Unpadded base64url HMAC-SHA256 over ``header.payload``."""
    digest = hmac.new(secret.encode("utf-8"), f"{header_b64}.{payload_b64}".encode(), hashlib.sha256).digest()
    return _b64url_encode(digest)


def encode_jwt(claims: dict[str, Any], secret: str) -> str:
    """Build an HS256 token; the counterpart of JWT verification, for clients and tests."""
    header_b64 = _b64url_encode(json.dumps({"alg": "HS256", "typ": "JWT"}, separators=(",", ":")).encode())
    payload_b64 = _b64url_encode(json.dumps(claims, separators=(",", ":")).encode())
    return f"{header_b64}.{payload_b64}.{sign_hs256(header_b64, payload_b64, secret)}"


def hmac_signature(body: bytes, secret: str, algorithm: HmacAlgorithm = HmacAlgorithm.SHA256) -> str:
    """Hex digest a sender puts in the signature header."""
    return hmac.new(secret.encode("utf-8"), body, _DIGESTS[algorithm]).hexdigest()


@dataclass(frozen=True)
class WebhookRequest:
    """Transport-neutral view of an incoming webhook call."""

    body: bytes
    headers: Mapping[str, str] = field(default_factory=dict)
    client: str = "unknown"

    def header(self, name: str) -> str | None:
        wanted = name.lower()
        for key, value in self.headers.items():
            if key.lower() == wanted:
                return value
        return None

    def json(self) -> Any:
        """Parsed body; an empty body reads as an empty object."""
        if not self.body.strip():
            return {}
        try:
            return json.loads(self.body)
        except (ValueError, UnicodeDecodeError) as e:
            raise WebhookAuthenticationError(f"Invalid JSON body: {e}", status=400) from e


def body_records(payload: Any) -> list[Record]:
    """A list body, ``{"records": [...]}``, or a single object.

    Raises:
        WebhookAuthenticationError: (400) If any record is not a JSON object
    """
    if isinstance(payload, list):
        records = payload
    elif isinstance(payload, dict) and isinstance(payload.get("records"), list):
        records = payload["records"]
    else:
        records = [payload]
    if not all(isinstance(r, dict) for r in records):
        raise WebhookAuthenticationError("Webhook records must be JSON objects", status=400)
    return list(records)


class WebhookAuthenticator:
    """Verifies requests against webhook triggers.

    Example:
        authenticator = WebhookAuthenticator(EnvSecretResolver())
        trigger = authenticator.authenticate_any(definition.webhook_triggers(), request, pipeline_code="orders")
    """

    def __init__(self, resolver: SecretResolver, *, clock: Callable[[], float] = time.time) -> None:
        self._resolver = resolver
        self._clock = clock

    def _secret(self, secret_code: str | None, *, not_configured: str, not_found: str, missing_status: int) -> str:
        if not secret_code:
            raise WebhookAuthenticationError(not_configured, status=500)
        value = self._resolver.resolve(secret_code)
        if not value:
            raise WebhookAuthenticationError(not_found, status=missing_status)
        return value

    def authenticate(self, trigger: WebhookTrigger, request: WebhookRequest) -> None:
        """Raise WebhookAuthenticationError unless the request satisfies the trigger's scheme."""
        match trigger.authentication:
            case WebhookAuth.NONE:
                return
            case WebhookAuth.API_KEY:
                self._verify_api_key(trigger, request)
            case WebhookAuth.HMAC:
                self._verify_hmac(trigger, request)
            case WebhookAuth.BASIC:
                self._verify_basic(trigger, request)
            case WebhookAuth.JWT:
                self._verify_jwt(trigger, request)

    def authenticate_any(self, triggers: list[WebhookTrigger], request: WebhookRequest, *, pipeline_code: str) -> WebhookTrigger:
        """The first trigger the request authenticates against.

        Raises:
            WebhookAuthenticationError: The last trigger's failure when none matches
        """
        if not triggers:
            raise WebhookAuthenticationError("Pipeline is not configured for webhook trigger", status=400)
        last_error: WebhookAuthenticationError | None = None
        for trigger in triggers:
            try:
                self.authenticate(trigger, request)
            except WebhookAuthenticationError as e:
                last_error = e
                continue
            if trigger.authentication == WebhookAuth.NONE:
                slog.warning("webhook_unauthenticated", pipeline_code=pipeline_code, trigger_key=trigger.key, client=request.client)
            return trigger
        raise last_error or WebhookAuthenticationError("Authentication failed", status=401)

    def _verify_api_key(self, trigger: WebhookTrigger, request: WebhookRequest) -> None:
        api_key = request.header(trigger.api_key_header_name)
        if not api_key:
            raise WebhookAuthenticationError("Missing API key", status=401)
        if len(api_key) > MAX_API_KEY_LENGTH:
            raise WebhookAuthenticationError("Invalid API key format", status=400)
        secret = self._secret(
            trigger.api_key_secret_code,
            not_configured="API key secret code not configured",
            not_found="API key not found",
            missing_status=401,
        )
        prefix = trigger.api_key_prefix or ""
        provided = api_key[len(prefix) :] if api_key.startswith(prefix) else api_key
        if not timing_safe_equal(secret, provided):
            raise WebhookAuthenticationError("Invalid API key", status=401)

    def _verify_hmac(self, trigger: WebhookTrigger, request: WebhookRequest) -> None:
        signature = request.header(trigger.hmac_header_name)
        if not signature:
            raise WebhookAuthenticationError("Missing signature", status=401)
        if len(signature) > MAX_SIGNATURE_LENGTH:
            raise WebhookAuthenticationError("Invalid signature format", status=400)
        secret = self._secret(
            trigger.secret_code,
            not_configured="HMAC secret code not configured",
            not_found="HMAC secret not found",
            missing_status=500,
        )
        expected = hmac_signature(request.body, secret, trigger.hmac_algorithm)
        if not timing_safe_equal(expected, signature):
            raise WebhookAuthenticationError("Invalid signature", status=401)

    def _verify_basic(self, trigger: WebhookTrigger, request: WebhookRequest) -> None:
        header = request.header("authorization")
        if not header:
            raise WebhookAuthenticationError("Missing Authorization header", status=401)
        if not header.startswith("Basic "):
            raise WebhookAuthenticationError("Invalid Authorization header format", status=401)
        try:
            decoded = base64.b64decode(header[6:]).decode("utf-8", errors="replace")
        except (binascii.Error, ValueError) as e:
            raise WebhookAuthenticationError("Invalid credentials encoding", status=401) from e
        username, sep, password = decoded.partition(":")
        if not sep or not username or not password:
            raise WebhookAuthenticationError("Invalid credentials format", status=401)
        secret = self._secret(
            trigger.basic_secret_code,
            not_configured="Basic auth secret code not configured",
            not_found="Basic auth credentials not found",
            missing_status=401,
        )
        if not timing_safe_equal(secret, decoded):
            raise WebhookAuthenticationError("Invalid credentials", status=401)

    def _verify_jwt(self, trigger: WebhookTrigger, request: WebhookRequest) -> None:
        header = request.header(trigger.jwt_header_name)
        if not header:
            raise WebhookAuthenticationError("Missing Authorization header", status=401)
        if len(header) > MAX_JWT_HEADER_LENGTH:
            raise WebhookAuthenticationError("Authorization header too large", status=400)
        parts = header.split(" ")
        if parts[0].lower() != "bearer" or len(parts) < 2 or not parts[1]:
            raise WebhookAuthenticationError("Invalid Authorization header format", status=401)
        token = parts[1]
        secret = self._secret(
            trigger.jwt_secret_code,
            not_configured="JWT secret code not configured",
            not_found="JWT secret not found",
            missing_status=401,
        )

        segments = token.split(".")
        if len(segments) != 3:
            raise WebhookAuthenticationError("Invalid JWT format", status=401)
        header_b64, payload_b64, signature_b64 = segments
        if not timing_safe_equal(sign_hs256(header_b64, payload_b64, secret), signature_b64):
            raise WebhookAuthenticationError("Invalid JWT signature", status=401)

        try:
            claims = json.loads(_b64url_decode(payload_b64).decode("utf-8"))
        except (binascii.Error, ValueError) as e:
            raise WebhookAuthenticationError("Invalid JWT payload", status=401) from e
        if not isinstance(claims, dict):
            raise WebhookAuthenticationError("Invalid JWT payload", status=401)
        now = int(self._clock())
        exp, nbf = claims.get("exp"), claims.get("nbf")
        for claim in (exp, nbf):
            if claim and not isinstance(claim, int | float):
                raise WebhookAuthenticationError("Invalid JWT payload", status=401)
        if exp and exp < now:
            raise WebhookAuthenticationError("JWT has expired", status=401)
        if nbf and nbf > now:
            raise WebhookAuthenticationError("JWT is not yet valid", status=401)


@dataclass(frozen=True)
class WebhookAcceptance:
    """An authenticated request, ready to start a seeded run."""

    trigger: WebhookTrigger
    records: list[Record]
    triggered_by: str


class WebhookHandler:
    """Authenticates, throttles and converts webhook calls for one service.

    Rate limits are per pipeline, trigger and client, in requests per minute.
    """

    def __init__(self, authenticator: WebhookAuthenticator) -> None:
        self._authenticator = authenticator
        self._limiters: dict[tuple[str, str], RequestRateLimiter] = {}
        self._lock = threading.Lock()

    def _limiter(self, pipeline_code: str, trigger: WebhookTrigger) -> RequestRateLimiter | None:
        if trigger.rate_limit is None:
            return None
        key = (pipeline_code, trigger.key or trigger.path or "webhook")
        with self._lock:
            limiter = self._limiters.get(key)
            if limiter is None:
                name = "webhook_" + re.sub(r"[^A-Za-z0-9_]", "_", f"{key[0]}_{key[1]}")
                limiter = RequestRateLimiter(name, trigger.rate_limit)
                self._limiters[key] = limiter
        return limiter

    def accept(self, pipeline_code: str, triggers: list[WebhookTrigger], request: WebhookRequest) -> WebhookAcceptance:
        """Authenticate and convert a request.

        Raises:
            WebhookAuthenticationError: 400/401/429/500 depending on the failure
        """
        trigger = self._authenticator.authenticate_any(triggers, request, pipeline_code=pipeline_code)
        limiter = self._limiter(pipeline_code, trigger)
        if limiter is not None and not limiter.allow(request.client):
            raise WebhookAuthenticationError("Too many webhook requests", status=429)
        if trigger.require_idempotency_key and not request.header(IDEMPOTENCY_HEADER):
            raise WebhookAuthenticationError("Missing X-Idempotency-Key", status=400)
        records = body_records(request.json())
        triggered_by = f"webhook:{trigger.key or trigger.path or 'default'}"
        slog.debug(
            "webhook_accepted",
            pipeline_code=pipeline_code,
            trigger_key=trigger.key,
            record_count=len(records),
            auth_type=trigger.authentication.value,
        )
        return WebhookAcceptance(trigger=trigger, records=records, triggered_by=triggered_by)

    def close(self) -> None:
        with self._lock:
            limiters = list(self._limiters.values())
            self._limiters.clear()
        for limiter in limiters:
            limiter.close()
