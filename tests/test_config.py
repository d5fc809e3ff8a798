import json

import pytest

from cfpush.config import DEFAULT_TIMEOUT, load_config, parse_config
from cfpush.errors import DeployError, ErrorKind
from cfpush.manifest import FileManifest, InlineManifest


def test_minimal_config_uses_defaults():
    config = parse_config({"target": "api.example.com"})
    assert config.timeout == DEFAULT_TIMEOUT
    assert config.self_signed is False
    assert config.services == []
    assert config.manifest.to_source() == FileManifest(path="manifest.yml")


@pytest.mark.parametrize("timeout", [None, 0, "0", ""])
def test_unset_timeout_falls_back_to_default(timeout):
    assert parse_config({"target": "api.example.com", "pluginTimeout": timeout}).timeout == DEFAULT_TIMEOUT


def test_negative_timeout_is_rejected():
    with pytest.raises(DeployError) as exc:
        parse_config({"target": "api.example.com", "pluginTimeout": -1})
    assert exc.value.kind is ErrorKind.MANIFEST_INVALID


def test_missing_target_is_malformed():
    with pytest.raises(DeployError) as exc:
        parse_config({"organization": "acme"})
    assert exc.value.kind is ErrorKind.MALFORMED_TARGET


def test_service_requests_keep_declaration_order():
    config = parse_config({
        "target": "api.example.com",
        "servicesToCreate": [
            {"name": "db", "type": "postgres", "plan": "small", "resetIfExists": True},
            {"name": "cache", "type": "redis", "plan": "tiny"},
        ],
    })
    first, second = config.service_requests()
    assert (first.name, first.reset_if_exists) == ("db", True)
    assert (second.name, second.reset_if_exists) == ("cache", False)


@pytest.mark.parametrize("value", ["inlineConfig", "jenkinsConfig"])
def test_inline_choice_builds_inline_source(value):
    config = parse_config({
        "target": "api.example.com",
        "manifestChoice": {
            "value": value,
            "app_name": "shop",
            "memory": 512,
            "instances": 2,
            "no_route": True,
            "env_vars": [{"key": "MODE", "value": "prod"}],
            "services_names": [{"name": "db"}, "cache"],
        },
    })
    source = config.manifest.to_source()
    assert isinstance(source, InlineManifest)
    assert source.name == "shop"
    assert source.memory == "512"
    assert source.instances == "2"
    assert source.no_route == "true"
    assert source.env_vars == {"MODE": "prod"}
    assert source.service_names == ["db", "cache"]


def test_unknown_manifest_choice_is_invalid():
    with pytest.raises(DeployError) as exc:
        parse_config({"target": "api.example.com", "manifestChoice": {"value": "magic"}})
    assert exc.value.kind is ErrorKind.MANIFEST_INVALID


def test_load_yaml_with_overrides(tmp_path):
    path = tmp_path / "cfpush.yml"
    path.write_text(
        "target: api.example.com\n"
        "organization: acme\n"
        "cloudSpace: dev\n"
        "credentialsId: cf-prod\n"
        "manifestChoice:\n"
        "  value: manifestFile\n"
        "  manifest_file: deploy/manifest.yml\n"
    )
    config = load_config(path, {"space": "prod", "timeout": None})
    assert config.space == "prod"
    assert config.organization == "acme"
    assert config.credentials_id == "cf-prod"
    assert config.timeout == DEFAULT_TIMEOUT
    assert config.manifest.manifest_file == "deploy/manifest.yml"


def test_load_json(tmp_path):
    path = tmp_path / "cfpush.json"
    path.write_text(json.dumps({"target": "api.example.com", "selfSigned": True}))
    assert load_config(path).self_signed is True


def test_missing_config_file(tmp_path):
    with pytest.raises(DeployError) as exc:
        load_config(tmp_path / "absent.yml")
    assert exc.value.kind is ErrorKind.MANIFEST_NOT_FOUND


@pytest.mark.parametrize("text", ["target: [unclosed\n", "- a\n- b\n"])
def test_unparsable_config_file(tmp_path, text):
    path = tmp_path / "bad.yml"
    path.write_text(text)
    with pytest.raises(DeployError) as exc:
        load_config(path)
    assert exc.value.kind is ErrorKind.MANIFEST_INVALID
