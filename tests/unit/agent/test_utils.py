"""
工具函数测试
"""

import asyncio
import re

import pytest

from seacomm_agent.domain.enums import FailureReason, Priority
from seacomm_agent.domain.errors import (
    AgentError,
    CompressionError,
    StorageError,
    TransmissionError,
)
from seacomm_agent.domain.models import AttemptRecord
from seacomm_agent.utils import json
from seacomm_agent.utils.exceptions import map_exception
from seacomm_agent.utils.ids import generate_message_id
from seacomm_agent.utils.logging import sanitize_log_message
from seacomm_agent.utils.time import format_duration, to_iso


class TestMapException:
    """异常映射测试"""

    def test_agent_error_passthrough(self):
        error = StorageError("disk full")
        assert map_exception(error) is error

    @pytest.mark.parametrize("exc", [asyncio.TimeoutError(), ConnectionResetError("reset")])
    def test_link_errors(self, exc):
        mapped = map_exception(exc, transport="cellular")
        assert isinstance(mapped, TransmissionError)
        assert mapped.reason == FailureReason.LINK_INTERRUPTED
        assert mapped.transport == "cellular"

    def test_os_error(self):
        mapped = map_exception(FileNotFoundError(2, "missing", "/data/queue.json"))
        assert isinstance(mapped, StorageError)
        assert mapped.path == "/data/queue.json"

    def test_value_error(self):
        assert isinstance(map_exception(ValueError("bad stream")), CompressionError)

    def test_fallback(self):
        mapped = map_exception(RuntimeError())
        assert type(mapped) is AgentError
        assert mapped.message == "RuntimeError"


class TestFormatting:
    """格式化测试"""

    @pytest.mark.parametrize(
        ("ms", "text"),
        [(250, "250ms"), (1500, "1.5s"), (90_000, "1.5m"), (5_400_000, "1.5h")],
    )
    def test_format_duration(self, ms, text):
        assert format_duration(ms) == text

    def test_to_iso(self):
        assert to_iso(None) is None
        assert to_iso(0) == "1970-01-01T00:00:00+00:00"

    def test_message_id(self):
        assert re.fullmatch(r"msg-\d{13}-[0-9a-f]{8}", generate_message_id())
        assert generate_message_id() != generate_message_id()


class TestJson:
    """JSON 工具测试"""

    def test_dumps_domain_objects(self):
        data = {
            Priority.HIGH: [AttemptRecord(transport="radio", ok=False, at=1.0, error="no_acknowledgement")],
            "reason": FailureReason.PAYLOAD_TOO_LARGE,
            "raw": b"ok",
        }

        decoded = json.loads(json.dumps(data))

        assert decoded["high"][0]["transport"] == "radio"
        assert decoded["reason"] == "payload_too_large"
        assert decoded["raw"] == "ok"


class TestSanitize:
    """日志脱敏测试"""

    def test_phone_number_masked(self):
        text = sanitize_log_message("sms to +4791234567 queued")
        assert "+4791234567" not in text
        assert text.startswith("sms to +47")

    def test_iccid_masked(self):
        text = sanitize_log_message("sim=8947080012345678901")
        assert "8947080012345678901" not in text

    def test_password_masked(self):
        assert "hunter2" not in sanitize_log_message("apn password=hunter2")

    def test_empty(self):
        assert sanitize_log_message("") == ""
