import copy
import io
import os
import sys
from decimal import Decimal

import pytest
from PIL import Image

# srcディレクトリをパスに追加
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..', 'src')))

from config_loader import DEFAULTS
from obligation_store import SqliteObligationStore
from payment_models import Currency, PendingObligation
from state_store import StateStore


@pytest.fixture
def cfg():
    c = copy.deepcopy(DEFAULTS)
    c["rate_limits"] = {
        "text": {"rate_per_sec": 1000.0, "burst": 100},
        "structured": {"rate_per_sec": 1000.0, "burst": 100},
    }
    c["retry"] = {"max_attempts": 2, "base_delay": 0.0, "max_delay": 0.0, "jitter": 0.0}
    return c


@pytest.fixture
def store(tmp_path):
    s = StateStore(str(tmp_path / "state.db"))
    s.init_db()
    return s


@pytest.fixture
def obligations(store):
    return SqliteObligationStore(store)


def make_png(color=(255, 0, 0)) -> bytes:
    buf = io.BytesIO()
    Image.new("RGB", (8, 8), color).save(buf, "PNG")
    return buf.getvalue()


def obligation(oid="ob1", amount="1500.00", currency=Currency.PHP, reference="GC123456789", buyer_name=None, **kw):
    return PendingObligation(
        id=oid,
        order_id=kw.pop("order_id", f"order-{oid}"),
        buyer_id=kw.pop("buyer_id", f"buyer-{oid}"),
        amount=Decimal(amount),
        currency=currency,
        reference=reference,
        buyer_name=buyer_name,
        **kw,
    )
