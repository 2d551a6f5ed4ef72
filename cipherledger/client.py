# FILE: cipherledger/client.py
from __future__ import annotations

"""
Caller-facing surface.

    async with build_client(load_settings()) as client:
        res = await client.submit("hello", client.account)
        if res.ok:
            await client.verify(res.record.id)

`build_client()` wires backends from Settings.ledger_backend:
  - "memory"  : InMemoryLedger + local coprocessor (dev / tests)
  - "jsonrpc" : JSON-RPC ledger gateway + HTTP relayer
"""

import logging
from typing import Callable, Dict, List, Optional

from prometheus_client import generate_latest

from .config import Settings, load_settings
from .crypto import (
    DecryptionService,
    EncryptionProvider,
    LocalCoprocessor,
    LocalDecryptionService,
    LocalEncryptionProvider,
    RelayerDecryptionService,
    RelayerEncryptionProvider,
)
from .errors import MSG_UNAVAILABLE, classify, error_kind, user_message
from .ledger import InMemoryLedger, JsonRpcLedgerClient, LedgerClient
from .logging import log_operation
from .records import OperationResult, ReconciledState, Record
from .reconcile import ReconciliationLoop
from .session import ClientSession, StateSubscriber
from .status import StatusSubscriber
from .submission import SubmissionPipeline
from .verification import VerificationProtocol

logger = logging.getLogger(__name__)

MSG_AVAILABLE = "Service available"


class CipherLedgerClient:
    def __init__(self, session: ClientSession) -> None:
        self.session = session
        self.reconciler = ReconciliationLoop(session)
        self._submission = SubmissionPipeline(session, self.reconciler)
        self._verification = VerificationProtocol(session, self.reconciler)

    @property
    def settings(self) -> Settings:
        return self.session.settings

    @property
    def account(self) -> str:
        return self.session.ledger.account

    # -- operations ------------------------------------------------------

    async def submit(self, label: str, recipient: str) -> OperationResult:
        return await self._submission.submit(label, recipient)

    async def verify(self, record_id: str) -> OperationResult:
        return await self._verification.verify(record_id)

    async def refresh(self) -> ReconciledState:
        return await self.reconciler.refresh()

    async def check_availability(self) -> bool:
        s = self.session
        try:
            available = await s.call(s.ledger.is_service_available())
        except Exception as e:
            err = classify(e)
            log_operation(
                logger,
                action="check_availability",
                outcome="failed",
                error_kind=error_kind(err),
                message="availability check failed",
                level=logging.WARNING,
            )
            s.notifier.error(user_message(err, "check_availability"))
            return False
        if available:
            s.notifier.success(MSG_AVAILABLE)
        else:
            s.notifier.error(MSG_UNAVAILABLE)
        return bool(available)

    # -- views -----------------------------------------------------------

    def records(self) -> List[Record]:
        return self.session.records()

    def stats(self) -> Dict[str, int]:
        return self.session.state.stats()

    def history(self) -> List[str]:
        return self.session.history()

    def metrics(self) -> bytes:
        """Prometheus text exposition of this process's metrics (empty when disabled)."""
        if not self.settings.metrics_enabled:
            return b""
        return generate_latest()

    def subscribe_status(self, callback: StatusSubscriber) -> Callable[[], None]:
        return self.session.notifier.subscribe(callback)

    def subscribe_state(self, callback: StateSubscriber) -> Callable[[], None]:
        return self.session.subscribe_state(callback)

    # -- lifecycle -------------------------------------------------------

    async def start(self) -> None:
        """Start the periodic refresh loop when configured."""
        if self.reconciler.start():
            logger.info("periodic refresh started", extra={"interval_s": self.settings.refresh_interval_s})

    async def aclose(self) -> None:
        await self.reconciler.stop()
        await self.session.aclose()
        s = self.session
        await s.encryption.aclose()
        await s.decryption.aclose()
        await s.ledger.aclose()

    async def __aenter__(self) -> "CipherLedgerClient":
        await self.start()
        return self

    async def __aexit__(self, *exc) -> None:
        await self.aclose()


def build_client(
    settings: Optional[Settings] = None,
    *,
    ledger: Optional[LedgerClient] = None,
    encryption: Optional[EncryptionProvider] = None,
    decryption: Optional[DecryptionService] = None,
) -> CipherLedgerClient:
    """
    Wire a client from Settings. Explicit backends override the ones the
    settings would select.
    """
    settings = settings or load_settings()
    logging.getLogger("cipherledger").setLevel(
        getattr(logging, settings.log_level.upper(), logging.INFO)
    )

    backend = settings.ledger_backend
    if backend == "memory":
        cop = LocalCoprocessor()
        ledger = ledger or InMemoryLedger(
            cop,
            account=settings.account,
            contract_address=settings.contract_address,
        )
        encryption = encryption or LocalEncryptionProvider(cop)
        decryption = decryption or LocalDecryptionService(cop)
    elif backend == "jsonrpc":
        ledger = ledger or JsonRpcLedgerClient(
            settings.ledger_rpc_url,
            account=settings.account,
            contract_address=settings.contract_address or None,
            chain_id=settings.chain_id,
            timeout_s=settings.http_timeout_s,
            poll_interval_s=settings.confirmation_poll_interval_s,
        )
        encryption = encryption or RelayerEncryptionProvider(
            settings.relayer_url, timeout_s=settings.http_timeout_s
        )
        decryption = decryption or RelayerDecryptionService(
            settings.relayer_url, timeout_s=settings.http_timeout_s
        )
    else:
        raise ValueError(f"unknown ledger backend: {backend!r}")

    session = ClientSession(
        settings,
        ledger=ledger,
        encryption=encryption,
        decryption=decryption,
    )
    logger.info(
        "client built",
        extra={"backend": backend, "config_hash": settings.config_hash(), "config_origin": settings.config_origin},
    )
    return CipherLedgerClient(session)
