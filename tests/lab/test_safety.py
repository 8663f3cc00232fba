import pytest

from labforge.safety import BLOCKED_COMMANDS, find_blocked, is_safe


def test_blocks_substring_case_insensitive():
    assert is_safe("echo sudo make me a sandwich") is False
    assert is_safe("SUDO ls") is False
    assert find_blocked("Shutdown -h now") == "shutdown"


def test_allows_plain_commands():
    assert is_safe("ls -la") is True
    assert is_safe("pwd") is True
    assert find_blocked("cat /etc/os-release") is None


@pytest.mark.parametrize("command", ["rm -rf /", "kill -9 1", "dd if=/dev/zero of=/dev/sda", "mount /dev/sdb /mnt"])
def test_blocks_dangerous_commands(command):
    assert is_safe(command) is False


def test_coarse_match_blocks_harmless_words():
    # "su" is a substring of "summary"
    assert is_safe("echo summary") is False


def test_denylist_contents():
    assert len(BLOCKED_COMMANDS) == 16
    assert "rm -rf" in BLOCKED_COMMANDS
