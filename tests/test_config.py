"""
Tests for settings resolution and the command-line entry point.
"""

import string
from pathlib import Path

import pytest

from katal import crypto
from katal import run_bot
from katal.config import DEFAULT_RELAYS, Settings
from katal.errors import ConfigError


def test_defaults_generate_identity_and_code():
    settings = Settings.from_env({})

    assert settings.identity_generated
    assert len(settings.unlock_code) == 6
    assert set(settings.unlock_code) <= set(string.ascii_uppercase + string.digits)
    assert settings.web_port == 6798
    assert settings.server_port == 6799
    assert settings.smb_port == 445
    assert settings.relays == DEFAULT_RELAYS
    assert settings.save_dir.name == "katal"
    assert settings.event_window == 120.0
    assert settings.max_retries == 2


def test_env_values():
    identity = crypto.Identity.generate()
    env = {
        "NSEC": identity.nsec,
        "UNLOCKCODE": "sesame",
        "WEBPORT": "8080",
        "SERVERPORT": "8081",
        "SAVE_DIR": "/srv/katal",
        "RELAYS": "wss://one, wss://two ,",
        "LOG_LEVEL": "debug",
        "ARIA2_SECRET": "tok",
    }

    settings = Settings.from_env(env)

    assert settings.identity == identity
    assert not settings.identity_generated
    assert settings.unlock_code == "sesame"
    assert (settings.web_port, settings.server_port) == (8080, 8081)
    assert settings.save_dir == Path("/srv/katal")
    assert settings.relays == ["wss://one", "wss://two"]
    assert settings.log_level == "DEBUG"
    assert settings.aria2_secret == "tok"


def test_bot_privkey_wins_over_nsec_and_flag_wins_over_both():
    a, b, c = (crypto.Identity.generate() for _ in range(3))
    env = {"BOT_PRIVKEY": a.secret_hex, "NSEC": b.nsec}

    assert Settings.from_env(env).identity.pubkey == a.pubkey
    assert Settings.from_env(env, privkey=c.nsec).identity.pubkey == c.pubkey


def test_overrides_ignore_none_and_apply_values():
    settings = Settings.from_env({"WEBPORT": "1234"}, web_port=None, unlock_code="flag", relays=["wss://x"])

    assert settings.web_port == 1234
    assert settings.unlock_code == "flag"
    assert settings.relays == ["wss://x"]


@pytest.mark.parametrize(
    "env",
    [
        {"BOT_PRIVKEY": "not-a-key"},
        {"NSEC": "nsec1invalid"},
        {"WEBPORT": "eighty"},
        {"EVENT_WINDOW": "soon"},
    ],
)
def test_bad_config_raises(env):
    with pytest.raises(ConfigError):
        Settings.from_env(env)


def test_unknown_override_raises():
    with pytest.raises(ConfigError):
        Settings.from_env({}, colour="blue")


def test_main_exits_1_on_bad_secret(tmp_path):
    code = run_bot.main(["--privkey", "definitely-not-a-key", "--env-file", str(tmp_path / "missing.env")])
    assert code == 1


def test_parse_args_collects_repeated_relays():
    args = run_bot.parse_args(["--relay", "wss://a", "--relay", "wss://b", "--web-port", "9000"])

    assert args.relays == ["wss://a", "wss://b"]
    assert args.web_port == 9000
    assert args.privkey is None


def test_bad_log_level_raises():
    with pytest.raises(ConfigError):
        Settings.from_env({"LOG_LEVEL": "loud"})
    with pytest.raises(ConfigError):
        Settings.from_env({}, log_level="chatty")
    assert Settings.from_env({}, log_level="warning").log_level == "WARNING"


def test_main_exits_1_on_bad_log_level(tmp_path):
    code = run_bot.main(["--log-level", "loud", "--env-file", str(tmp_path / "missing.env")])
    assert code == 1
