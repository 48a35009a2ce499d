import json
import logging
import sys
from decimal import Decimal
from pathlib import Path

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from utils.logger import JSONFormatter, KeyValueFormatter, get_logger


def test_keyword_fields_become_structured_data(caplog):
    caplog.set_level(logging.DEBUG, logger="structured_test")

    get_logger("structured_test").warning(
        "RPC endpoint rate limited, cooling down", endpoint="https://rpc.example", cooldown_seconds=31.4
    )

    record = caplog.records[-1]
    assert record.levelname == "WARNING"
    assert record.extra_data == {"endpoint": "https://rpc.example", "cooldown_seconds": 31.4}


def test_json_formatter_serializes_trade_values(caplog):
    caplog.set_level(logging.INFO, logger="structured_test")

    get_logger("structured_test").info("Trade priced", price=Decimal("2.50"))

    payload = json.loads(JSONFormatter().format(caplog.records[-1]))
    assert payload["message"] == "Trade priced"
    assert payload["logger"] == "structured_test"
    assert payload["data"] == {"price": "2.50"}


def test_key_value_formatter_appends_fields(caplog):
    caplog.set_level(logging.INFO, logger="structured_test")
    logger = get_logger("structured_test")

    logger.info("Trade history loaded", address="0xabc", trades=3)
    logger.info("Trade history service stopped")

    with_fields, without_fields = (KeyValueFormatter().format(r) for r in caplog.records[-2:])
    assert with_fields.endswith("Trade history loaded | address=0xabc trades=3")
    assert without_fields.endswith("structured_test: Trade history service stopped")


def test_disabled_level_is_not_emitted(caplog):
    caplog.set_level(logging.INFO, logger="structured_test")

    get_logger("structured_test").debug("Joining in-flight fetch", key="wallet")

    assert not any(r.getMessage() == "Joining in-flight fetch" for r in caplog.records)
