import logging
from collections.abc import Callable

RESET = "\033[0m"
DIM = "\033[2m"
BOLD = "\033[1m"
RED = "\033[31m"
GREEN = "\033[32m"
YELLOW = "\033[33m"
MAGENTA = "\033[35m"
CYAN = "\033[36m"

LEVEL_COLORS = {
    logging.DEBUG: DIM,
    logging.INFO: GREEN,
    logging.WARNING: YELLOW,
    logging.ERROR: RED,
    logging.CRITICAL: RED + BOLD,
}

# First matching rule wins; user lines must precede the generic transcript rule.
MESSAGE_STYLES: list[tuple[Callable[[str], bool], str]] = [
    (lambda msg: msg.startswith("State:") and "->" in msg, BOLD + CYAN),
    (lambda msg: msg.startswith("Transcript: [user]"), BOLD + GREEN),
    (lambda msg: msg.startswith("Transcript:"), CYAN),
    (lambda msg: msg.startswith("Interrupted"), BOLD + YELLOW),
    (lambda msg: "Live channel" in msg or "Channel closed by remote" in msg, MAGENTA),
]


def message_style(msg: str, levelno: int) -> str:
    for matches, style in MESSAGE_STYLES:
        if matches(msg):
            return style
    if levelno == logging.DEBUG:
        return DIM
    if levelno >= logging.WARNING:
        return LEVEL_COLORS.get(levelno, "")
    return ""


class ColoredFormatter(logging.Formatter):
    """Compact terminal formatter: time, level, short logger name, message.

    Session milestones (state changes, finished transcript lines, barge-in)
    are highlighted so a live conversation can be followed in the log.
    """

    def format(self, record: logging.LogRecord) -> str:
        color = LEVEL_COLORS.get(record.levelno, "")
        time = self.formatTime(record, self.datefmt)
        name = record.name.rsplit(".", 1)[-1]
        msg = record.getMessage()

        style = message_style(msg, record.levelno)
        if style:
            msg = f"{style}{msg}{RESET}"
        line = f"{DIM}{time}{RESET} {color}{record.levelname:<5}{RESET} {DIM}{name:<16}{RESET} {msg}"
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line
