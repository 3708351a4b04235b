import pytest
from pydantic import ValidationError

from emulbot.config.schema import AgentConfig, Config, InterjectionConfig


def test_defaults():
    cfg = Config()
    assert cfg.irc.nickname == "Emul"
    assert cfg.irc.line_limit == 430
    assert cfg.irc.send_delay == 0.6
    assert (cfg.irc.reconnect_initial, cfg.irc.reconnect_max) == (5.0, 300.0)
    assert cfg.admin.initial == "Baughn"
    assert cfg.agent.max_rounds == 3
    assert cfg.agent.buffer_capacity == 500
    assert cfg.agent.transport_retries == 2
    assert cfg.interjection.chance_per_message == 0.02
    assert cfg.interjection.mention_chance == 0.2
    assert cfg.tools.max_image_bytes == 4 * 1024 * 1024
    assert cfg.tools.image_cache_size == 20


def test_accepts_camel_case_keys():
    cfg = Config.model_validate({
        "irc": {"server": "irc.example.net", "useTls": False, "nickservPassword": "hunter2"},
        "agent": {"maxRounds": 5, "historyTurns": 40},
        "interjection": {"chancePerMessage": 0.1, "minGapSeconds": 0},
    })

    assert cfg.irc.server == "irc.example.net"
    assert cfg.irc.use_tls is False
    assert cfg.irc.nickserv_password == "hunter2"
    assert cfg.agent.max_rounds == 5
    assert cfg.agent.history_turns == 40
    assert cfg.interjection.chance_per_message == 0.1


def test_dump_uses_camel_case():
    data = Config().model_dump(by_alias=True)

    assert "chancePerMessage" in data["interjection"]
    assert "maxRounds" in data["agent"]


def test_round_ceiling_must_be_positive():
    with pytest.raises(ValidationError):
        AgentConfig(max_rounds=0)


def test_transport_retries_are_bounded():
    with pytest.raises(ValidationError):
        AgentConfig(transport_retries=3)
    assert AgentConfig(transport_retries=0).transport_retries == 0


def test_interjection_curve_validation():
    with pytest.raises(ValidationError):
        InterjectionConfig(curve="sawtooth")
    with pytest.raises(ValidationError):
        InterjectionConfig(chance_per_message=0)


def test_paths_expand_user():
    cfg = Config()

    assert "~" not in str(cfg.db_path)
    assert "~" not in str(cfg.prompt_path)
    assert "~" not in str(cfg.torrent_watch_dir)
