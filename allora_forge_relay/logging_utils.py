"""Logging setup for the submission relay: one rotating file per stage."""

from __future__ import annotations

import functools
import logging
import re
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Dict, FrozenSet, List

from bip_utils import Bip39Languages
from bip_utils.bip.bip39.bip39_mnemonic_utils import Bip39WordsListGetter

_LOGGER_NAME = "allora_forge_relay"
_STAGE_HANDLERS: Dict[str, RotatingFileHandler] = {}
_LOG_DIR: Path | None = None

# Candidate runs of 12 or more lowercase words; only BIP39 words are redacted
_WORD_RUN_RE = re.compile(r"\b[a-z]+(?:\s+[a-z]+){11,}\b")
_WORD_RE = re.compile(r"[a-z]+")
MIN_PHRASE_WORDS = 12
REDACTED = "[REDACTED MNEMONIC]"


@functools.lru_cache(maxsize=1)
def _bip39_words() -> FrozenSet[str]:
    words = Bip39WordsListGetter.Instance().GetByLanguage(Bip39Languages.ENGLISH)
    return frozenset(words.GetWordAtIdx(i) for i in range(words.Length()))


def _redact_run(match: "re.Match[str]") -> str:
    text = match.group(0)
    vocabulary = _bip39_words()
    pieces: List[str] = []
    cursor = 0
    run: List["re.Match[str]"] = []

    def flush() -> None:
        nonlocal cursor
        if len(run) >= MIN_PHRASE_WORDS:
            pieces.append(text[cursor : run[0].start()])
            pieces.append(REDACTED)
            cursor = run[-1].end()
        run.clear()

    for word in _WORD_RE.finditer(text):
        if word.group(0) in vocabulary:
            run.append(word)
        else:
            flush()
    flush()
    pieces.append(text[cursor:])
    return "".join(pieces)


def redact_mnemonics(message: str) -> str:
    """Replace every run of 12+ BIP39 English words in ``message``."""

    return _WORD_RUN_RE.sub(_redact_run, message)


class MnemonicRedactionFilter(logging.Filter):
    """Replaces anything shaped like a seed phrase in the rendered message."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        redacted = redact_mnemonics(message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


def initialise_logging(root: Path, level: str = "INFO", max_bytes: int = 5_000_000, backups: int = 5) -> Path:
    """Configure the package logger.

    Parameters
    ----------
    root:
        Directory under which ``data/artifacts/logs`` is created.
    level:
        Name of the minimum level to emit (``DEBUG``, ``INFO``, ...).
    max_bytes:
        Size at which ``relay.log`` rotates.
    backups:
        Rotated copies kept for ``relay.log``.
    """

    global _LOG_DIR  # noqa: PLW0603 - module level cache on purpose

    log_dir = root / "data" / "artifacts" / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    _LOG_DIR = log_dir

    logger = logging.getLogger(_LOGGER_NAME)
    logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    logger.propagate = False
    _reset_handlers(logger)

    relay_file = log_dir / "relay.log"
    logger.addHandler(_handler(RotatingFileHandler(relay_file, maxBytes=max_bytes, backupCount=backups)))
    logger.addHandler(_handler(logging.StreamHandler(), include_name=False))
    logger.debug("Relay logging initialised at %s (level=%s)", relay_file, level.upper())
    return relay_file


def _reset_handlers(logger: logging.Logger) -> None:
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
    for stage_key, handler in _STAGE_HANDLERS.items():
        logging.getLogger(f"{_LOGGER_NAME}.{stage_key}").removeHandler(handler)
        handler.close()
    _STAGE_HANDLERS.clear()


def _handler(handler: logging.Handler, include_name: bool = True) -> logging.Handler:
    fmt = "%(asctime)sZ %(levelname)s"
    if include_name:
        fmt += " [%(name)s]"
    fmt += " %(message)s"
    handler.setFormatter(logging.Formatter(fmt=fmt, datefmt="%Y-%m-%dT%H:%M:%S"))
    handler.addFilter(MnemonicRedactionFilter())
    return handler


def get_stage_logger(stage: str) -> logging.Logger:
    """Return the logger of one relay stage (``pipeline``, ``wallet``, ...).

    After :func:`initialise_logging` each stage also gets ``<stage>.log`` next
    to ``relay.log``. Before that nothing touches the filesystem and records
    only propagate to the package logger.
    """

    stage_key = stage.strip().lower() or "general"
    logger = logging.getLogger(f"{_LOGGER_NAME}.{stage_key}")
    logger.propagate = True

    if _LOG_DIR is not None and stage_key not in _STAGE_HANDLERS:
        handler = _handler(RotatingFileHandler(_LOG_DIR / f"{stage_key}.log", maxBytes=2_000_000, backupCount=3))
        logger.addHandler(handler)
        _STAGE_HANDLERS[stage_key] = handler

    return logger
