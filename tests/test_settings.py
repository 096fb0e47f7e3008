import pytest

from vibecoder.server.settings import DEFAULTS, AppInfo, Settings


def test_get_returns_default_when_empty():
    settings = Settings()
    assert settings.get("render.refresh_interval") == 1.0
    assert settings.get("queue.max_age") == 3600
    assert settings.get("slack.bot_token") is None


def test_set_and_get():
    settings = Settings()
    settings.set("render.max_text_length", 1000)
    assert settings.get("render.max_text_length") == 1000


def test_set_unknown_key_raises():
    with pytest.raises(KeyError):
        Settings().set("nope.nope", 1)
    with pytest.raises(KeyError):
        Settings({"also.unknown": 1})


def test_get_with_explicit_default():
    assert Settings().get("slack.app_token", "fallback") == "fallback"


def test_get_all_returns_defaults_merged():
    settings = Settings({"agent.model": "opus"})
    all_settings = settings.get_all()
    assert all_settings["agent.model"] == "opus"
    assert all_settings["server.port"] == 3000
    assert set(all_settings) == set(DEFAULTS)


def test_get_effective_ignores_unset_cli_overrides():
    settings = Settings({"server.port": 4000})
    effective = settings.get_effective({"server.port": None, "server.host": "127.0.0.1"})
    assert effective["server.port"] == 4000
    assert effective["server.host"] == "127.0.0.1"


def test_from_env_maps_variables():
    settings = Settings.from_env({
        "SLACK_BOT_TOKEN": "xoxb-1",
        "SLACK_APP_TOKEN": "xapp-1",
        "CLAUDE_CWD": "/srv/project",
        "CLAUDE_MODEL": "sonnet",
        "PORT": "8080",
        "CLAUDE_IDLE_TIMEOUT": "90",
        "PM2_SERVICE_NAME": "bot",
        "UNRELATED": "x",
    })
    assert settings.get("slack.bot_token") == "xoxb-1"
    assert settings.get("slack.app_token") == "xapp-1"
    assert settings.get("agent.cwd") == "/srv/project"
    assert settings.get("agent.model") == "sonnet"
    assert settings.get("server.port") == 8080
    assert settings.get("agent.idle_timeout") == 90.0
    assert settings.get("deploy.service_name") == "bot"


def test_from_env_skips_empty_and_malformed_values():
    settings = Settings.from_env({"SLACK_BOT_TOKEN": "", "PORT": "eighty"})
    assert settings.get("slack.bot_token") is None
    assert settings.get("server.port") == 3000


def test_missing_required():
    assert Settings().missing_required() == ["slack.bot_token"]
    assert Settings({"slack.bot_token": "xoxb"}).missing_required() == []


def test_app_info_without_git_repo(tmp_path):
    info = AppInfo.detect(str(tmp_path))
    assert info.commit is None
