# src/hubflow/triggers/__init__.py
"""Trigger handling: webhook authentication and request conversion."""

from hubflow.triggers.webhook import (
    EnvSecretResolver,
    InMemorySecretResolver,
    SecretResolver,
    WebhookAcceptance,
    WebhookAuthenticationError,
    WebhookAuthenticator,
    WebhookHandler,
    WebhookRequest,
    body_records,
)

__all__ = [
    "EnvSecretResolver",
    "InMemorySecretResolver",
    "SecretResolver",
    "WebhookAcceptance",
    "WebhookAuthenticationError",
    "WebhookAuthenticator",
    "WebhookHandler",
    "WebhookRequest",
    "body_records",
]
