import io
import json
import logging
import sys
from datetime import datetime
from typing import TextIO


# Force a UTF-8 text stream for logging to avoid 'charmap' errors on Windows consoles
def _utf8_stream_for_stdout() -> TextIO:
    try:
        if hasattr(sys.stdout, "buffer"):
            return io.TextIOWrapper(sys.stdout.buffer, encoding="utf-8", errors="replace", line_buffering=True)
    except (AttributeError, ValueError):
        pass
    return sys.stdout


def configure_logging(level: int = logging.INFO):
    logging.basicConfig(
        level=level,
        format="%(message)s",
        handlers=[logging.StreamHandler(_utf8_stream_for_stdout())],
        force=True,  # override handlers added by uvicorn
    )


logger = logging.getLogger("idrelay")


def json_log(event: str, **kwargs):
    """
    Emit an ASCII-only JSON log line so consoles with legacy codepages don't crash
    when messages contain emojis or non-ASCII characters.
    """
    payload = {"ts": datetime.utcnow().isoformat() + "Z", "event": event, **kwargs}
    logger.info(json.dumps(payload, ensure_ascii=True, default=str))
