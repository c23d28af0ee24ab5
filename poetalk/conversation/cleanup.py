import logging
from pathlib import Path

logger = logging.getLogger(__name__)


def clear_history(directory: Path) -> int:
    """Delete every conversation record under *directory*.

    Works on the files directly and knows nothing about a store's caches;
    callers holding a ``ConversationStore`` should invalidate it afterwards.
    Returns the number of records removed.
    """
    directory = Path(directory)
    if not directory.is_dir():
        return 0

    files = list(directory.glob("*.json"))
    for f in files:
        f.unlink()
    logger.info("Deleted %d conversation records from %s", len(files), directory)
    return len(files)
