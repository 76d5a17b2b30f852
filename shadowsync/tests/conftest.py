# shadowsync/tests/conftest.py
from typing import Dict, List, Optional

import pytest

from shadowsync.codec import ZERO_ADDRESS
from shadowsync.config import Settings
from shadowsync.errors import TransientIOError
from shadowsync.ledger import make_shadow_ledger
from shadowsync.mediator import make_mediator
from shadowsync.primary import PrimarySource, TransferEvent

ADMIN = "0x" + "a" * 40
MEDIATOR = "0x" + "b" * 40
RELAYER = "0x" + "c" * 40
ALICE = "0x" + "1" * 40
BOB = "0x" + "2" * 40
CAROL = "0x" + "3" * 40
STRANGER = "0x" + "9" * 40
CONTRACT = "0x" + "d" * 40


class FakePrimary(PrimarySource):
    """Scripted primary: a list of transfer events and a movable head."""

    def __init__(self, events: Optional[List[TransferEvent]] = None, head: int = 0):
        self.events: List[TransferEvent] = list(events or [])
        self.head_value = head
        self.owners: Dict[int, str] = {}
        self.supply: Optional[int] = None
        self.fail_head = 0
        self.transfer_calls: List[tuple] = []

    def add(self, token_id: int, to: str, position: int, frm: str = ZERO_ADDRESS, log_index: int = 0):
        self.events.append(TransferEvent(token_id, frm, to, position, log_index))
        self.head_value = max(self.head_value, position)

    async def head(self) -> int:
        if self.fail_head > 0:
            self.fail_head -= 1
            raise TransientIOError("primary head unavailable")
        return self.head_value

    async def transfers(self, start: int, end: int) -> List[TransferEvent]:
        self.transfer_calls.append((start, end))
        return [ev for ev in self.events if start <= ev.position <= end]

    async def owner_of(self, token_id: int) -> Optional[str]:
        return self.owners.get(token_id)

    async def total_supply(self) -> Optional[int]:
        return self.supply


@pytest.fixture
def primary() -> FakePrimary:
    return FakePrimary()


@pytest.fixture(params=["mem", "sqlite"])
def dsn(request, tmp_path) -> str:
    if request.param == "mem":
        return "mem://"
    return f"sqlite:///{tmp_path / 'shadow.db'}"


@pytest.fixture
def ledger(dsn):
    lg = make_shadow_ledger(dsn, admin_owner=ADMIN, updater=MEDIATOR)
    yield lg
    lg.close()


@pytest.fixture
def mediator(ledger, dsn):
    med = make_mediator(ledger, dsn, address=MEDIATOR, owner=ADMIN)
    med.add_relayer(ADMIN, RELAYER)
    yield med
    med.close()


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        primary_rpc_url="http://primary.invalid",
        primary_contract=CONTRACT,
        shadow_url="http://shadow.invalid",
        relayer_address=RELAYER,
        admin_owner=ADMIN,
        mediator_address=MEDIATOR,
        batch_size=3,
        chunk_size=10,
        batch_interval_s=0.05,
        poll_interval_s=0.01,
        checkpoint_path=str(tmp_path / "state.json"),
    )
