"""
Logging setup for the memctx CLI, MCP server and engine.

memctx itself logs under the "memctx" logger. The embedding stack
(sentence-transformers, HuggingFace hub, tokenizers) and the HTTP client
used for Ollama are noisy, and the MCP server speaks its protocol over
stdout, so their chatter is muted unless MEMCTX_VERBOSE is set.
"""

import logging
import os
import sys
import warnings
from logging.handlers import RotatingFileHandler
from pathlib import Path

OPS_LOG_FILENAME = "memctx-ops.log"
OPS_LOG_MAX_BYTES = 1_000_000
OPS_LOG_BACKUPS = 3

# Read by the HuggingFace libraries at import time
_EMBEDDING_ENV = {
    "HF_HUB_DISABLE_PROGRESS_BARS": "1",
    "HF_HUB_DISABLE_TELEMETRY": "1",
    "TRANSFORMERS_VERBOSITY": "error",
    "TOKENIZERS_PARALLELISM": "false",
}

_NOISY_LOGGERS = ("sentence_transformers", "transformers", "huggingface_hub", "urllib3")

if not os.environ.get("MEMCTX_VERBOSE"):
    for _name, _value in _EMBEDDING_ENV.items():
        os.environ.setdefault(_name, _value)


def configure_quiet_mode(quiet: bool = True) -> None:
    """
    Mute the embedding and HTTP libraries.

    Needed before the MCP server starts: anything they print to stdout
    would land in the protocol stream.
    """
    if not quiet:
        return
    os.environ.update(_EMBEDDING_ENV)
    warnings.filterwarnings("ignore")
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.ERROR)


def enable_debug_mode() -> None:
    """Debug logging to stderr for memctx and the embedding libraries (--verbose)."""
    warnings.filterwarnings("default")
    for name in ("HF_HUB_DISABLE_PROGRESS_BARS", "TRANSFORMERS_VERBOSITY"):
        os.environ.pop(name, None)

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    if not any(isinstance(h, logging.StreamHandler) and getattr(h, "stream", None) is sys.stderr
               for h in root.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s: %(message)s", datefmt="%H:%M:%S"
        ))
        root.addHandler(handler)

    for name in ("memctx",) + _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.DEBUG)


def configure_ops_log(store_path) -> logging.Handler:
    """
    Attach the rotating operations log of a store directory.

    Report degradations (keyword fallback, stale instructions), indexing
    and imports are recorded in <store>/memctx-ops.log at INFO and above,
    with or without --verbose. The caller removes the returned handler
    when the engine closes.
    """
    log_path = Path(store_path) / OPS_LOG_FILENAME
    log_path.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        str(log_path), maxBytes=OPS_LOG_MAX_BYTES, backupCount=OPS_LOG_BACKUPS,
    )
    handler.setLevel(logging.INFO)
    handler.setFormatter(logging.Formatter(
        "%(asctime)s %(levelname)s %(name)s %(message)s", datefmt="%Y-%m-%d %H:%M:%S",
    ))

    logger = logging.getLogger("memctx")
    logger.addHandler(handler)
    if logger.level == logging.NOTSET or logger.level > logging.INFO:
        logger.setLevel(logging.INFO)
    return handler
