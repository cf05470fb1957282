import logging

from rich.console import Console
from rich.logging import RichHandler
from rich.theme import Theme

console = Console(
    theme=Theme(
        {
            "info": "cyan",
            "warning": "yellow",
            "error": "red",
            "debug": "grey50",
        }
    )
)

_handler = None


def setup_logging(level="INFO") -> logging.Logger:
    """
    Route every logger through a single rich handler on the root logger.
    Safe to call more than once; the level is updated in place.
    """
    global _handler

    root = logging.getLogger()
    resolved = logging.getLevelName(str(level).upper())
    unknown = not isinstance(resolved, int)
    if unknown:
        resolved = logging.INFO

    if _handler is None:
        _handler = RichHandler(
            console=console,
            rich_tracebacks=True,
            markup=False,
            show_time=True,
            show_path=False,
        )
        _handler.setFormatter(logging.Formatter("[%(name)s] %(message)s"))
        root.addHandler(_handler)

    root.setLevel(resolved)
    # paramiko is chatty at DEBUG (every packet); keep it one notch quieter.
    logging.getLogger("paramiko").setLevel(max(resolved, logging.INFO))

    if unknown:
        root.warning("Unknown log level %r, using INFO", level)
    return root
