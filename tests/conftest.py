import asyncio
import os
import tempfile
from decimal import Decimal

import pytest

# antes de importar pos_engine: Settings se lee al importar
_TMP = tempfile.mkdtemp(prefix="pos-engine-tests-")
os.environ.setdefault("DB_URL", f"sqlite:///{os.path.join(_TMP, 'default.db')}")
os.environ.setdefault("RECONCILIATION_LOG", os.path.join(_TMP, "reconciliation.jsonl"))
os.environ.setdefault("LOG_LEVEL", "WARNING")

from pos_engine.core.domain import CatalogItem, PricingConfiguration  # noqa: E402
from pos_engine.services.denominations import DenominationCount  # noqa: E402
from pos_engine.services.display_sync import DisplaySyncChannel, InMemoryDisplayStore  # noqa: E402
from pos_engine.services.recorder import InMemoryTransactionRecorder, ReconciliationJournal  # noqa: E402
from pos_engine.services.register import Register  # noqa: E402
from pos_engine.services.settlement import CheckoutSettlement  # noqa: E402
from pos_engine.services.shift import CashDrawerManager, InMemoryShiftStore  # noqa: E402
from pos_engine.services.terminal import SimulatedTerminal  # noqa: E402


def run(coro):
    return asyncio.run(coro)


async def no_sleep(_seconds):
    await asyncio.sleep(0)


def item(id_="SKU1", price="20.00", name=None):
    return CatalogItem(id=id_, name=name or id_, price=Decimal(price))


def flat_config(**overrides):
    base = dict(tax_rate=Decimal("0"), tip_enabled=False)
    base.update(overrides)
    return PricingConfiguration(**base)


def count(mapping):
    return DenominationCount.from_mapping(mapping)


class Rig:
    """Componentes en memoria para armar un Register por prueba."""

    def __init__(self, config=None, *, terminal=None, recorder=None, tip_max_attempts=3, journal_path=None):
        self.display_store = InMemoryDisplayStore()
        self.shift_store = InMemoryShiftStore()
        self.terminal = terminal or SimulatedTerminal()
        self.recorder = recorder or InMemoryTransactionRecorder()
        self.journal = ReconciliationJournal(journal_path) if journal_path else None
        self.drawer = CashDrawerManager("T1", self.shift_store)
        self.config = config
        self.tip_max_attempts = tip_max_attempts

    def settlement(self):
        return CheckoutSettlement(
            self.terminal,
            self.recorder,
            location_id="loc-1",
            register_id="T1",
            journal=self.journal,
            recorder_retry_seconds=0,
            sleep=no_sleep,
        )

    def register(self):
        channel = DisplaySyncChannel("loc-1", self.display_store, debounce_seconds=0)
        return Register(
            location_id="loc-1",
            register_id="T1",
            config=self.config,
            channel=channel,
            settlement=self.settlement(),
            drawer=self.drawer,
            tip_interval=0,
            tip_max_attempts=self.tip_max_attempts,
            sleep=no_sleep,
        )


@pytest.fixture
def rig():
    return Rig(flat_config())


@pytest.fixture
def open_drawer(rig):
    rig.drawer.open("emp-1", count({"100": 1}))
    return rig.drawer
