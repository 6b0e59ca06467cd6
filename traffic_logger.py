import json
import logging
import queue
from logging.handlers import QueueHandler, QueueListener, RotatingFileHandler
from typing import Dict, Optional

logger = logging.getLogger("throttle.worker.traffic")

# ======================================================
# Tunables
# ======================================================

QUEUE_MAX_SIZE = 1000        # Max events kept in memory
BACKUP_COUNT = 5

# ======================================================
# Internal State
# ======================================================

_event_logger = logging.getLogger("throttle.worker.traffic.file")
_event_logger.propagate = False

_listener: Optional[QueueListener] = None
_queue_handler: Optional[QueueHandler] = None


class _DroppingQueueHandler(QueueHandler):
    """
    put_nowait on a bounded queue; a full queue drops the event.
    """

    def enqueue(self, record):
        try:
            self.queue.put_nowait(record)
        except queue.Full:
            logger.debug("Traffic queue full, dropping event")


# ======================================================
# Lifecycle
# ======================================================

def start_traffic_logger(path: str, max_bytes: int = 10 * 1024 * 1024) -> None:
    """
    Attach a size-rotated JSON-lines file behind a background listener.
    Safe to call more than once.
    """
    global _listener, _queue_handler

    if _listener is not None:
        return

    try:
        file_handler = RotatingFileHandler(
            path, maxBytes=max_bytes, backupCount=BACKUP_COUNT, encoding="utf-8"
        )
    except OSError as e:
        logger.error(f"Traffic file logging disabled, cannot open {path}: {e}")
        return

    file_handler.setFormatter(
        logging.Formatter("[%(asctime)s] %(message)s", datefmt="%Y-%m-%d %H:%M:%S")
    )

    _queue_handler = _DroppingQueueHandler(queue.Queue(maxsize=QUEUE_MAX_SIZE))
    _event_logger.addHandler(_queue_handler)
    _event_logger.setLevel(logging.INFO)

    _listener = QueueListener(_queue_handler.queue, file_handler)
    _listener.start()

    logger.info(f"Traffic file log initialized at {path}")


def shutdown_traffic_logger() -> None:
    """
    Flush pending events and close the file.
    """
    global _listener, _queue_handler

    if _listener is None:
        return

    _listener.stop()
    for handler in _listener.handlers:
        handler.close()
    _event_logger.removeHandler(_queue_handler)

    _listener = None
    _queue_handler = None
    logger.info("Traffic file log shut down")


def is_logger_ready() -> bool:
    return _listener is not None


# ======================================================
# Public API
# ======================================================

def emit_traffic_event(event: Dict) -> None:
    """
    Fire-and-forget: never blocks, never raises, no-op when not started.
    """
    if _listener is None:
        return

    _event_logger.info(json.dumps(event, ensure_ascii=False, default=str))
