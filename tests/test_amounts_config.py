"""Regression tests for amount parsing, emitter handling, config and logging.

Run::

    python -m pytest tests/test_amounts_config.py -v

All tests are offline: no network calls and no external services.
"""
from __future__ import annotations

import datetime as dt
import logging
import os
import unittest
from unittest.mock import patch

import pytest


# ---------------------------------------------------------------------------
# Test: decimal display amounts convert exactly to base units
# ---------------------------------------------------------------------------

class TestToRaw(unittest.TestCase):

    def test_examples(self) -> None:
        from ntt_claimer.amounts import to_raw

        self.assertEqual(to_raw("1.5", 9), 1_500_000_000)
        self.assertEqual(to_raw("10", 9), 10_000_000_000)
        self.assertEqual(to_raw("0.000000001", 9), 1)
        self.assertEqual(to_raw("0", 9), 0)
        self.assertEqual(to_raw("000.000", 9), 0)
        self.assertEqual(to_raw("007.25", 2), 725)

    def test_large_value_stays_exact(self) -> None:
        from ntt_claimer.amounts import to_raw

        self.assertEqual(to_raw("123456789012.123456789", 9), 123_456_789_012_123_456_789)

    def test_too_many_fraction_digits(self) -> None:
        from ntt_claimer.amounts import to_raw
        from ntt_claimer.errors import PrecisionExceeded

        with self.assertRaises(PrecisionExceeded):
            to_raw("1.0000000001", 9)
        with self.assertRaises(PrecisionExceeded):
            to_raw("1.23", 1)

    def test_rejects_malformed_input(self) -> None:
        from ntt_claimer.amounts import to_raw
        from ntt_claimer.errors import InvalidAmountFormat

        for bad in ["", ".5", "1.", "-1", "+1", "1e9", "1,5", " 1", "1.5\n", "abc", "1.2.3", "١"]:
            with self.subTest(value=bad):
                with self.assertRaises(InvalidAmountFormat):
                    to_raw(bad, 9)

    def test_errors_are_value_errors(self) -> None:
        from ntt_claimer.amounts import to_raw

        with self.assertRaises(ValueError):
            to_raw("x", 9)
        with self.assertRaises(ValueError):
            to_raw("0.0000000001", 9)


class TestToDisplay:

    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            (1_500_000_000, "1.5"),
            (3_000_000_000, "3"),
            (1, "0.000000001"),
            (0, "0"),
        ],
    )
    def test_formats(self, raw: int, expected: str) -> None:
        from ntt_claimer.amounts import to_display

        assert to_display(raw, 9) == expected

    def test_zero_decimals(self) -> None:
        from ntt_claimer.amounts import to_display

        assert to_display(42, 0) == "42"

    def test_negative_rejected(self) -> None:
        from ntt_claimer.amounts import to_display
        from ntt_claimer.errors import InvalidAmountFormat

        with pytest.raises(InvalidAmountFormat):
            to_display(-1, 9)


# ---------------------------------------------------------------------------
# Test: emitter addresses normalize to the 20-byte 0x form
# ---------------------------------------------------------------------------

class TestEmitterAddress(unittest.TestCase):

    SHORT = "0x" + "ab" * 20
    LONG = "0x" + "00" * 12 + "ab" * 20

    def test_long_and_short_forms_agree(self) -> None:
        from ntt_claimer.attestation import normalize_emitter_address

        self.assertEqual(normalize_emitter_address(self.LONG), self.SHORT)
        self.assertEqual(normalize_emitter_address(self.SHORT), self.SHORT)

    def test_prefix_and_case_are_optional(self) -> None:
        from ntt_claimer.attestation import normalize_emitter_address

        self.assertEqual(normalize_emitter_address(self.SHORT[2:].upper()), self.SHORT)
        self.assertEqual(normalize_emitter_address("0X" + "AB" * 32), "0x" + "ab" * 20)

    def test_idempotent(self) -> None:
        from ntt_claimer.attestation import normalize_emitter_address

        once = normalize_emitter_address(self.LONG)
        self.assertEqual(normalize_emitter_address(once), once)

    def test_universal_form_is_left_padded(self) -> None:
        from ntt_claimer.attestation import to_universal_address

        self.assertEqual(to_universal_address(self.SHORT), "00" * 12 + "ab" * 20)
        self.assertEqual(to_universal_address(self.LONG), "00" * 12 + "ab" * 20)

    def test_invalid(self) -> None:
        from ntt_claimer.attestation import normalize_emitter_address
        from ntt_claimer.errors import InvalidEmitterAddress

        for bad in ["", "0x", "0x1234", "0x" + "ab" * 21, "0x" + "zz" * 20, "ab" * 33]:
            with self.subTest(value=bad):
                with self.assertRaises(InvalidEmitterAddress):
                    normalize_emitter_address(bad)


# ---------------------------------------------------------------------------
# Test: ClaimerConfig is built from env, env file and CLI flags
# ---------------------------------------------------------------------------

BASE_ENV = {
    "SOLANA_RPC_URL": "https://api.mainnet-beta.solana.com",
    "SOLANA_PRIVATE_KEY": "not-checked-here",
    "CUSTODY_ADDRESS": "CustodyAccount1111111111111111111111111111",
    "REQUIRED_AMOUNT": "1.5",
    "NTT_PROGRAM_ID": "NttManager111111111111111111111111111111111",
    "TOKEN_MINT": "TokenMint1111111111111111111111111111111111",
    "EMITTER_CHAIN": "2",
    "EMITTER_ADDRESS": "0x" + "00" * 12 + "cd" * 20,
    "SEQUENCE": "42",
    "POLL_INTERVAL_MS": "30000",
}


def _parse(env: dict, *flags: str):
    from ntt_claimer.config import parse_args

    with patch.dict(os.environ, env, clear=True):
        return parse_args(["--env-file", "/nonexistent/ntt-claimer.env", *flags])


class TestConfigParse(unittest.TestCase):

    def test_required_values_from_env(self) -> None:
        cfg = _parse(BASE_ENV)
        self.assertEqual(cfg.rpc_url, "https://api.mainnet-beta.solana.com")
        self.assertEqual(cfg.required_amount_display, "1.5")
        self.assertEqual(cfg.required_amount_raw, 1_500_000_000)
        self.assertEqual(cfg.emitter_chain, 2)
        self.assertEqual(cfg.sequence, 42)
        self.assertEqual(cfg.poll_interval_ms, 30000)
        self.assertAlmostEqual(cfg.poll_interval_seconds, 30.0)

    def test_optional_defaults(self) -> None:
        from ntt_claimer.attestation import WORMHOLESCAN_API
        from ntt_claimer.solana_ntt import WORMHOLE_CORE_PROGRAM_ID

        cfg = _parse(BASE_ENV)
        self.assertEqual(cfg.wormhole_core_program_id, WORMHOLE_CORE_PROGRAM_ID)
        self.assertEqual(cfg.wormholescan_api_url, WORMHOLESCAN_API)
        self.assertEqual(cfg.commitment, "confirmed")
        self.assertEqual(cfg.log_dir, "logs")
        self.assertEqual(cfg.log_level, "INFO")

    def test_private_key_not_in_repr(self) -> None:
        cfg = _parse(BASE_ENV)
        self.assertNotIn("not-checked-here", repr(cfg))

    def test_cli_flag_overrides_env(self) -> None:
        cfg = _parse(BASE_ENV, "--poll-interval-ms", "250", "--commitment", "finalized")
        self.assertEqual(cfg.poll_interval_ms, 250)
        self.assertEqual(cfg.commitment, "finalized")

    def test_optional_env_overrides(self) -> None:
        env = {**BASE_ENV, "LOG_LEVEL": "debug", "WORMHOLESCAN_API_URL": "https://scan.example/", "COMMITMENT": "processed"}
        cfg = _parse(env)
        self.assertEqual(cfg.log_level, "DEBUG")
        self.assertEqual(cfg.wormholescan_api_url, "https://scan.example")
        self.assertEqual(cfg.commitment, "processed")

    def test_missing_required_variable(self) -> None:
        from ntt_claimer.errors import ConfigError

        for name in ["SOLANA_RPC_URL", "SOLANA_PRIVATE_KEY", "CUSTODY_ADDRESS", "TOKEN_MINT", "SEQUENCE"]:
            env = {k: v for k, v in BASE_ENV.items() if k != name}
            with self.subTest(missing=name):
                with self.assertRaises(ConfigError) as ctx:
                    _parse(env)
                self.assertEqual(str(ctx.exception), f"Missing required environment variable: {name}")

    def test_invalid_values(self) -> None:
        from ntt_claimer.errors import ConfigError

        cases = {
            "REQUIRED_AMOUNT": "1.0000000001",
            "EMITTER_ADDRESS": "0x1234",
            "EMITTER_CHAIN": "0",
            "POLL_INTERVAL_MS": "-5",
            "SEQUENCE": "abc",
            "SOLANA_RPC_URL": "ftp://rpc.example",
        }
        for name, value in cases.items():
            with self.subTest(name=name):
                with self.assertRaises(ConfigError):
                    _parse({**BASE_ENV, name: value})

    def test_amount_error_is_config_error(self) -> None:
        from ntt_claimer.errors import ClaimerError, ConfigError

        with self.assertRaises(ConfigError) as ctx:
            _parse({**BASE_ENV, "REQUIRED_AMOUNT": "1,5"})
        self.assertIsInstance(ctx.exception, ClaimerError)
        self.assertIn("REQUIRED_AMOUNT", str(ctx.exception))

    def test_commitment_from_env_is_validated(self) -> None:
        from ntt_claimer.errors import ConfigError

        with self.assertRaises(ConfigError) as ctx:
            _parse({**BASE_ENV, "COMMITMENT": "bogus"})
        self.assertIn("COMMITMENT", str(ctx.exception))

    def test_commitment_env_is_case_insensitive(self) -> None:
        cfg = _parse({**BASE_ENV, "COMMITMENT": "Finalized"})
        self.assertEqual(cfg.commitment, "finalized")


class TestEnvFile:

    def test_parse_env_file(self, tmp_path) -> None:
        from ntt_claimer.config import parse_env_file

        path = tmp_path / ".env"
        path.write_text(
            "# comment\n"
            "\n"
            "export SEQUENCE=7\n"
            "REQUIRED_AMOUNT='2.25'\n"
            'LOG_DIR="claims"\n'
            "garbage line\n",
            encoding="utf-8",
        )
        assert parse_env_file(str(path)) == {
            "SEQUENCE": "7",
            "REQUIRED_AMOUNT": "2.25",
            "LOG_DIR": "claims",
        }

    def test_missing_file_is_empty(self, tmp_path) -> None:
        from ntt_claimer.config import parse_env_file

        assert parse_env_file(str(tmp_path / "absent.env")) == {}

    def test_env_file_fills_gaps_and_real_env_wins(self, tmp_path) -> None:
        from ntt_claimer.config import parse_args

        path = tmp_path / "claimer.env"
        path.write_text("SEQUENCE=99\nPOLL_INTERVAL_MS=1000\n", encoding="utf-8")
        env = {k: v for k, v in BASE_ENV.items() if k != "SEQUENCE"}
        with patch.dict(os.environ, env, clear=True):
            cfg = parse_args(["--env-file", str(path)])
        assert cfg.sequence == 99
        assert cfg.poll_interval_ms == 30000
        assert cfg.env_file == str(path)


# ---------------------------------------------------------------------------
# Test: log lines and daily log files
# ---------------------------------------------------------------------------

def _record(level: int, msg: str, created: float) -> logging.LogRecord:
    record = logging.LogRecord("ntt_claimer", level, __file__, 1, msg, None, None)
    record.created = created
    return record


class TestLogFormat(unittest.TestCase):

    def test_line_format(self) -> None:
        from ntt_claimer.log_setup import ClaimerFormatter

        line = ClaimerFormatter().format(_record(logging.INFO, "Starting NTT claimer", 0.0))
        self.assertEqual(line, "[1970-01-01T00:00:00.000Z] [INFO] Starting NTT claimer")

    def test_levels_and_millis(self) -> None:
        from ntt_claimer.log_setup import ClaimerFormatter

        fmt = ClaimerFormatter()
        self.assertEqual(
            fmt.format(_record(logging.WARNING, "w", 1.5)),
            "[1970-01-01T00:00:01.500Z] [WARN] w",
        )
        self.assertIn("[ERROR] e", fmt.format(_record(logging.ERROR, "e", 0.0)))
        self.assertIn("[ERROR] c", fmt.format(_record(logging.CRITICAL, "c", 0.0)))


class TestDailyFileHandler:

    def test_writes_dated_file(self, tmp_path) -> None:
        from ntt_claimer.log_setup import ClaimerFormatter, DailyFileHandler

        now = dt.datetime(2024, 3, 5, 23, 59, tzinfo=dt.timezone.utc)
        handler = DailyFileHandler(str(tmp_path / "logs"), now=lambda: now)
        handler.setFormatter(ClaimerFormatter())
        handler.emit(_record(logging.INFO, "first", 0.0))
        handler.emit(_record(logging.INFO, "second", 0.0))

        path = tmp_path / "logs" / "claimer-2024-03-05.log"
        assert path.read_text(encoding="utf-8").splitlines() == [
            "[1970-01-01T00:00:00.000Z] [INFO] first",
            "[1970-01-01T00:00:00.000Z] [INFO] second",
        ]

    def test_switches_file_on_new_day(self, tmp_path) -> None:
        from ntt_claimer.log_setup import DailyFileHandler

        days = iter([
            dt.datetime(2024, 3, 5, 23, 59, tzinfo=dt.timezone.utc),
            dt.datetime(2024, 3, 6, 0, 1, tzinfo=dt.timezone.utc),
        ])
        handler = DailyFileHandler(str(tmp_path), now=lambda: next(days))
        handler.emit(_record(logging.INFO, "a", 0.0))
        handler.emit(_record(logging.INFO, "b", 0.0))
        assert (tmp_path / "claimer-2024-03-05.log").exists()
        assert (tmp_path / "claimer-2024-03-06.log").exists()

    def test_write_failure_is_dropped_silently(self, tmp_path, capsys) -> None:
        from ntt_claimer.log_setup import DailyFileHandler

        blocker = tmp_path / "not-a-dir"
        blocker.write_text("x", encoding="utf-8")
        handler = DailyFileHandler(str(blocker))
        with patch.object(handler, "handleError") as handle_error:
            handler.emit(_record(logging.ERROR, "lost", 0.0))
        handle_error.assert_not_called()
        assert capsys.readouterr().err == ""

    def test_configure_logging_installs_handlers(self, tmp_path) -> None:
        from ntt_claimer.log_setup import DailyFileHandler, configure_logging

        root = logging.getLogger()
        saved_handlers, saved_level = list(root.handlers), root.level
        try:
            configure_logging(str(tmp_path), "debug")
            kinds = [type(h) for h in root.handlers]
            assert DailyFileHandler in kinds
            assert logging.StreamHandler in kinds
            assert root.level == logging.DEBUG
        finally:
            for handler in list(root.handlers):
                root.removeHandler(handler)
                handler.close()
            for handler in saved_handlers:
                root.addHandler(handler)
            root.setLevel(saved_level)
