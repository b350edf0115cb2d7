"""Tests for remote/safety.py - dangerous command detection."""

import pytest

from common.errors import CommandBlocked
from remote.safety import ensure_safe, find_rule, is_dangerous, normalize_command


class TestNormalizeCommand:
    """Tests for command normalization."""

    def test_lowercases_and_collapses_whitespace(self):
        assert normalize_command("  RM   -RF\t/  ") == "rm -rf /"

    def test_empty(self):
        assert normalize_command("   ") == ""


class TestIsDangerous:
    """Tests for the rule battery."""

    @pytest.mark.parametrize(
        "command",
        [
            "rm -rf /",
            "rm -rf *",
            "rm -fr /",
            "sudo rm --no-preserve-root -rf /",
            "mkfs.ext4 /dev/sda1",
            "dd if=/dev/zero of=/dev/sda bs=1M",
            ":(){ :|:& };:",
            "ls -la; rm -rf /tmp/data",
            "cat file && shutdown now",
            "echo $(rm -rf ~)",
            "reboot",
            "killall nginx",
            "userdel bob",
            "passwd root",
            "chmod 777 /",
            "iptables -F",
            "ufw disable",
            "apt-get remove openssh-server",
            "crontab -r",
            "echo key > ~/.ssh/authorized_keys",
        ],
    )
    def test_destructive_commands(self, command):
        assert is_dangerous(command) is True

    @pytest.mark.parametrize(
        "command",
        [
            "ls -la",
            "git status",
            "df -h",
            "tail -n 100 /var/log/nginx/error.log",
            "systemctl status nginx",
            "ls /nonexistent 2>/dev/null",
            "echo $((1 + 2))",
            "cat /etc/os-release",
        ],
    )
    def test_benign_commands(self, command):
        assert is_dangerous(command) is False

    def test_case_insensitive(self):
        assert is_dangerous("REBOOT") is True

    def test_suspicious_sequence_needs_destructive_verb(self):
        """Arithmetic expansion alone is fine; next to rm it is not."""
        assert is_dangerous("echo $((2 * 3))") is False
        assert is_dangerous("rm $((x)) file") is True

    def test_empty_command(self):
        assert is_dangerous("") is False


class TestFindRule:
    """Tests for rule reporting."""

    def test_reports_group(self):
        rule = find_rule("rm -rf /")
        assert rule.startswith("filesystem destruction")

    def test_no_match(self):
        assert find_rule("uptime") is None


class TestEnsureSafe:
    """Tests for ensure_safe()."""

    def test_raises_on_dangerous(self):
        with pytest.raises(CommandBlocked, match="blocked for security reasons"):
            ensure_safe("rm -rf /")

    def test_passes_benign(self):
        ensure_safe("uptime")
