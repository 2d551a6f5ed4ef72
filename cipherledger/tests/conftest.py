# cipherledger/tests/conftest.py
from types import SimpleNamespace

import pytest

from cipherledger.client import build_client
from cipherledger.config import Settings
from cipherledger.crypto import LocalCoprocessor, LocalDecryptionService, LocalEncryptionProvider
from cipherledger.ledger import InMemoryLedger

ACCOUNT = "0xABC"


@pytest.fixture
def make_env():
    """
    Factory for a client wired to a fresh in-memory ledger.

    Returns a namespace with `client`, `ledger`, `coprocessor`, `settings`.
    Pass `ledger=` to share an existing ledger (another session) and
    `decryption=` to swap in a custom decryption service.
    """

    def _make(*, ledger=None, coprocessor=None, decryption=None, clock=None, **overrides):
        base = dict(
            account=ACCOUNT,
            post_write_refresh_delay_s=0.0,
            remote_call_timeout_s=5.0,
            confirmation_timeout_s=5.0,
        )
        base.update(overrides)
        settings = Settings(**base)
        cop = coprocessor or LocalCoprocessor(master_key=b"\x07" * 32)
        if ledger is None:
            kwargs = {"clock": clock} if clock is not None else {}
            ledger = InMemoryLedger(
                cop,
                account=settings.account,
                contract_address=settings.contract_address,
                **kwargs,
            )
        client = build_client(
            settings,
            ledger=ledger,
            encryption=LocalEncryptionProvider(cop),
            decryption=decryption or LocalDecryptionService(cop),
        )
        return SimpleNamespace(client=client, ledger=ledger, coprocessor=cop, settings=settings)

    return _make


@pytest.fixture
def env(make_env):
    return make_env()
