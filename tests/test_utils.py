from cardrescue.utils import format_bytes, run_command


def test_streamed_command_delivers_lines_as_written():
    lines = []
    outcome = run_command(["sh", "-c", "echo one; echo two >&2; printf 'three\\rfour\\n'; exit 3"],
                          on_line=lines.append)

    assert lines == ["one", "two", "three", "four"]
    assert outcome.returncode == 3
    assert outcome.stdout.splitlines() == lines


def test_missing_program_is_not_an_exception():
    lines = []
    outcome = run_command(["cardrescue-no-such-program"], on_line=lines.append)
    assert outcome.returncode == -1
    assert lines == []
    assert run_command(["cardrescue-no-such-program"]).returncode == -1


def test_format_bytes():
    assert format_bytes(512) == "512.0 B"
    assert format_bytes(64 * 1024 * 1024) == "64.0 MB"
