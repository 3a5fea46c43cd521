"""Tests for the in-memory log ring buffer."""

from __future__ import annotations

import logging

from conveyor.log_buffer import LogBuffer, RingBufferHandler
from conveyor.pipeline.credentials import MASK, SecretMasker, SecretMaskingFilter


def make_logger(name: str, buffer: LogBuffer, masker: SecretMasker | None = None):
    log = logging.getLogger(name)
    log.setLevel(logging.DEBUG)
    log.propagate = False
    handler = RingBufferHandler(buffer)
    if masker is not None:
        handler.addFilter(SecretMaskingFilter(masker))
    log.addHandler(handler)
    return log, handler


class TestLogBuffer:
    def test_capture_and_query(self):
        buffer = LogBuffer(maxlen=10)
        log, handler = make_logger("conveyor.test.buffer", buffer)
        try:
            log.info("Started run run-0123456789ab")
            log.warning("Stage failed")
            log.debug("noise", extra={"run_id": "run-ffffffffffff"})
        finally:
            log.removeHandler(handler)

        assert buffer.size == 3
        newest = buffer.query()
        assert [e["message"] for e in newest] == ["noise", "Stage failed", "Started run run-0123456789ab"]
        assert [e["message"] for e in buffer.query(level="WARNING")] == ["Stage failed"]
        assert buffer.query(run_id="run-0123456789ab")[0]["level"] == "INFO"
        assert buffer.query(run_id="run-ffffffffffff")[0]["message"] == "noise"
        assert len(buffer.query(name="conveyor.test")) == 3
        assert buffer.query(name="other") == []
        assert len(buffer.query(limit=2)) == 2

    def test_bounded(self):
        buffer = LogBuffer(maxlen=2)
        for i in range(5):
            buffer.push({"level": "INFO", "name": "x", "message": str(i), "run_id": None})
        assert buffer.size == 2
        assert buffer.maxlen == 2
        assert [e["message"] for e in buffer.query()] == ["4", "3"]

    def test_secrets_masked_before_capture(self):
        buffer = LogBuffer()
        masker = SecretMasker()
        masker.add("tok-abcdef")
        log, handler = make_logger("conveyor.test.masked", buffer, masker)
        try:
            log.info("using %s", "tok-abcdef")
        finally:
            log.removeHandler(handler)
        assert buffer.query()[0]["message"] == f"using {MASK}"
