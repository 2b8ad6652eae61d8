"""Credential handling shared by the REST dispatcher and the stream session.

The same API key authenticates both transports:
- REST: ``Authorization: Bearer <key>`` header on every request
- Stream: ``{"action":"auth","params":"<key>"}`` as the first frame

Usage:
    authenticator = Authenticator(settings.api_key)
    headers = authenticator.auth_headers()
    await connection.send(authenticator.auth_frame().model_dump_json())
"""

from __future__ import annotations

import logging
from typing import Union

from pydantic import SecretStr

from polyfeed.common.exceptions import InvalidCredential
from polyfeed.messaging.models.messages import StreamRequest

logger = logging.getLogger(__name__)


class Authenticator:
    """Holds the API key; read-only after construction."""

    def __init__(self, secret: Union[str, SecretStr]) -> None:
        if isinstance(secret, SecretStr):
            secret = secret.get_secret_value()

        if not isinstance(secret, str):
            raise InvalidCredential(f"expected a string, got {type(secret).__name__}")
        if not secret.strip():
            raise InvalidCredential()

        self._secret = SecretStr(secret)

    def credential(self) -> SecretStr:
        return self._secret

    def auth_headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._secret.get_secret_value()}"}

    def auth_frame(self) -> StreamRequest:
        return StreamRequest.auth(self._secret.get_secret_value())

    def __repr__(self) -> str:
        return f"Authenticator(credential={self._secret!r})"
