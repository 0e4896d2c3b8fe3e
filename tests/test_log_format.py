import logging

from voice_session.log_format import BOLD, CYAN, GREEN, RESET, YELLOW, ColoredFormatter


def make_record(msg: str, level: int = logging.INFO) -> logging.LogRecord:
    return logging.LogRecord(
        name="voice_session.domain.session",
        level=level,
        pathname=__file__,
        lineno=1,
        msg=msg,
        args=None,
        exc_info=None,
    )


class TestColoredFormatter:
    def test_state_changes_highlighted(self):
        out = ColoredFormatter().format(make_record("State: IDLE -> CONNECTING"))
        assert f"{BOLD}{CYAN}State: IDLE -> CONNECTING{RESET}" in out

    def test_user_transcript(self):
        out = ColoredFormatter().format(make_record("Transcript: [user] hello"))
        assert f"{BOLD}{GREEN}Transcript: [user] hello{RESET}" in out

    def test_model_transcript(self):
        out = ColoredFormatter().format(make_record("Transcript: [model] hi"))
        assert f"{CYAN}Transcript: [model] hi{RESET}" in out
        assert BOLD + CYAN + "Transcript" not in out

    def test_interruption(self):
        out = ColoredFormatter().format(make_record("Interrupted: stopped 2 playback buffer(s)"))
        assert f"{BOLD}{YELLOW}Interrupted" in out

    def test_short_logger_name(self):
        out = ColoredFormatter().format(make_record("plain"))
        assert "session" in out
        assert "voice_session.domain" not in out
