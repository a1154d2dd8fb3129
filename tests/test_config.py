import pytest
from pydantic import ValidationError

from pscale_agent.config import AgentConfig, load_config

_REQUIRED_ENV = {
    "OPENAI_API_KEY": "sk-test",
    "PLANETSCALE_ORG": "acme",
    "PLANETSCALE_API_TOKEN_ID": "token-id",
    "PLANETSCALE_API_TOKEN": "secret",
}


def _set_required_env(monkeypatch) -> None:
    for name, value in _REQUIRED_ENV.items():
        monkeypatch.setenv(name, value)


def test_load_config_from_environment_only(monkeypatch, tmp_path) -> None:
    _set_required_env(monkeypatch)
    monkeypatch.setenv("PORT", "4001")
    monkeypatch.setenv("LOG_LEVEL", "debug")

    cfg = load_config(str(tmp_path / "missing.yaml"))

    assert cfg.port == 4001
    assert cfg.logging.level == "debug"
    assert cfg.model == "gpt-4-1106-preview"
    assert cfg.planetscale_auth == "token-id:secret"
    assert cfg.planetscale_org_url == "https://api.planetscale.com/v1/organizations/acme"


def test_environment_overrides_yaml_values(monkeypatch, tmp_path) -> None:
    _set_required_env(monkeypatch)
    monkeypatch.setenv("PSCALE_AGENT_MAX_TOOL_LOOPS", "3")
    cfg_file = tmp_path / "agent.yaml"
    cfg_file.write_text(
        "model: gpt-4o\nmax_tool_loops: 7\nplanetscale_base_url: http://localhost:9000/\nlogging:\n  json: true\n",
        encoding="utf-8",
    )

    cfg = load_config(str(cfg_file))

    assert cfg.model == "gpt-4o"
    assert cfg.max_tool_loops == 3
    assert cfg.logging.json_logs is True
    assert cfg.planetscale_org_url == "http://localhost:9000/v1/organizations/acme"


def test_missing_credentials_fail_validation(monkeypatch, tmp_path) -> None:
    for name in _REQUIRED_ENV:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")

    with pytest.raises(ValidationError) as excinfo:
        load_config(str(tmp_path / "missing.yaml"))

    missing = {err["loc"][0] for err in excinfo.value.errors() if err["type"] == "missing"}
    assert missing == {"planetscale_org", "planetscale_token_id", "planetscale_token"}


def test_blank_credential_is_rejected() -> None:
    with pytest.raises(ValidationError):
        AgentConfig.model_validate(
            {
                "openai_api_key": "sk-test",
                "planetscale_org": "  ",
                "planetscale_token_id": "id",
                "planetscale_token": "secret",
            }
        )


def test_unknown_config_keys_are_rejected() -> None:
    with pytest.raises(ValidationError):
        AgentConfig.model_validate(
            {
                "openai_api_key": "sk-test",
                "planetscale_org": "acme",
                "planetscale_token_id": "id",
                "planetscale_token": "secret",
                "upstream_base_url": "http://elsewhere",
            }
        )
