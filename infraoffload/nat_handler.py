"""Sends NAT settings to the infra manager."""

from __future__ import annotations

import contextlib
import logging
from collections.abc import Callable, Iterator
from typing import Any

from infraoffload.nat_translation import NatTranslation
from infraoffload.types import Reply

log = logging.getLogger(__name__)


class NatHandlerError(RuntimeError):
    """Raised when the infra manager rejects a NAT request."""


class NatServiceHandler:
    """Pushes NAT translations and SNAT settings to the infra manager.

    ``dial_manager`` opens a fresh client for each request; the client is
    closed when the request completes.
    """

    def __init__(self, dial_manager: Callable[[], Any]) -> None:
        self._dial_manager = dial_manager

    @contextlib.contextmanager
    def _client(self) -> Iterator[Any]:
        client = self._dial_manager()
        try:
            yield client
        finally:
            close = getattr(client, "close", None)
            if close is not None:
                close()

    @staticmethod
    def _check(reply: Reply | None) -> None:
        if reply is None:
            raise NatHandlerError("no reply from infra manager")
        if not reply.successful:
            raise NatHandlerError(reply.error_message)

    def nat_translation_add(self, translation: NatTranslation) -> None:
        """Install a NAT translation."""
        log.info("NatTranslationAdd endpoint %s", translation)
        with self._client() as client:
            try:
                reply = client.nat_translation_add(translation)
            except Exception as exc:
                log.error("Error calling infra manager NatTranslationAdd service: %s", exc)
                raise
        if reply is not None and not reply.successful:
            raise NatHandlerError(reply.error_message)

    def set_snat_address(self, ip: str) -> None:
        """Set the IPv4 address used for source NAT."""
        log.info("SetSnatAddress")
        with self._client() as client:
            reply = client.set_snat_address(snat_ipv4=ip, snat_ipv6="")
        self._check(reply)

    def add_del_snat_prefix(self, ip: str, is_add: bool) -> None:
        """Add or remove a prefix excluded from source NAT."""
        log.info("AddDelSnatPrefix")
        with self._client() as client:
            reply = client.add_del_snat_prefix(is_add=is_add, prefix=ip)
        self._check(reply)

    def nat_translation_delete(self, translation: NatTranslation) -> None:
        """Remove a NAT translation."""
        log.info("NatTranslationDelete %s", translation)
        with self._client() as client:
            reply = client.nat_translation_delete(translation)
        self._check(reply)