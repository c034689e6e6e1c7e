from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional

from apps.backend.services.commands.errors import CommandError
from apps.backend.services.commands.models import PlatformConnection
from apps.backend.services.shopify_client import ShopifyClient
from apps.backend.utils.settings import settings

log = logging.getLogger("commander.context")

Decryptor = Callable[[str], str]
ClientFactory = Callable[[str, str], Any]

DECRYPT_FAILED = "Failed to decrypt platform credentials"


def plaintext(secret: str) -> str:
    """Decryptor for deployments that store tokens unencrypted."""
    return secret


@dataclass
class BatchOutcome:
    item: Any
    value: Any = None
    error: Optional[CommandError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def unexpected(exc: Exception) -> CommandError:
    return CommandError(f"Unexpected error: {type(exc).__name__}: {exc}", status_code=500)


def run_batch(items: Iterable[Any], fn: Callable[[Any], Any], max_workers: int) -> List[BatchOutcome]:
    """
    Runs fn over items on a bounded pool and returns one outcome per item,
    in input order. Any failure fails only its own item; every item is
    attempted before this returns.
    """
    items = list(items)
    if not items:
        return []

    def _guard(item: Any) -> BatchOutcome:
        try:
            return BatchOutcome(item=item, value=fn(item))
        except CommandError as e:
            return BatchOutcome(item=item, error=e)
        except Exception as e:
            log.exception("Unexpected failure on batch item %r", item)
            return BatchOutcome(item=item, error=unexpected(e))

    with ThreadPoolExecutor(max_workers=max(1, min(max_workers, len(items)))) as pool:
        futures = [pool.submit(_guard, item) for item in items]
        return [f.result() for f in futures]


class ExecutionContext:
    """
    Per-run state shared by every handler and reverter: one platform client
    per connection, built from credentials decrypted exactly once.
    A connection whose credentials fail to decrypt has no client; its
    actions are reported as failed while other connections proceed.
    """

    def __init__(
        self,
        connections: List[PlatformConnection],
        clients: Dict[str, Any],
        credential_errors: Dict[str, str],
        max_workers: int,
    ) -> None:
        self.connections = connections
        self._clients = clients
        self._credential_errors = credential_errors
        self.max_workers = max_workers

    @classmethod
    def build(
        cls,
        connections: List[PlatformConnection],
        *,
        decrypt: Decryptor = plaintext,
        client_factory: ClientFactory = ShopifyClient,
        max_workers: Optional[int] = None,
    ) -> "ExecutionContext":
        clients: Dict[str, Any] = {}
        errors: Dict[str, str] = {}
        for conn in connections:
            try:
                token = decrypt(conn.access_token)
                clients[conn.id] = client_factory(conn.shop_domain, token)
            except Exception as e:
                log.error("Failed to prepare credentials for %s: %s", conn.shop_domain, type(e).__name__)
                errors[conn.id] = DECRYPT_FAILED
        return cls(connections, clients, errors, max_workers or settings.COMMANDS_MAX_WORKERS)

    def connection(self, platform_id: str) -> Optional[PlatformConnection]:
        for conn in self.connections:
            if conn.id == platform_id:
                return conn
        return None

    def connection_error(self, platform_id: str) -> Optional[str]:
        if platform_id in self._credential_errors:
            return self._credential_errors[platform_id]
        if platform_id not in self._clients:
            return "Platform not found"
        return None

    def client(self, platform_id: str) -> Any:
        return self._clients[platform_id]

    def run_each(self, items: Iterable[Any], fn: Callable[[Any], Any]) -> List[BatchOutcome]:
        return run_batch(items, fn, self.max_workers)
