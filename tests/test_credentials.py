import pytest

from cfpush.credentials import (
    ChainCredentialStore,
    Credentials,
    EnvCredentialStore,
    FileCredentialStore,
    default_store,
    require_credentials,
)
from cfpush.errors import DeployError, ErrorKind


def test_env_store_normalizes_id():
    store = EnvCredentialStore({"CFPUSH_CRED_CF_PROD_1_USERNAME": "u", "CFPUSH_CRED_CF_PROD_1_PASSWORD": "p"})
    assert store.lookup("cf-prod.1") == Credentials("u", "p")
    assert store.lookup("other") is None


def test_env_store_needs_both_halves():
    assert EnvCredentialStore({"CFPUSH_CRED_X_USERNAME": "u"}).lookup("x") is None


def test_file_store_with_target_scope(tmp_path):
    path = tmp_path / "creds.yml"
    path.write_text(
        "credentials:\n"
        "  prod:\n"
        "    username: deployer\n"
        "    password: s3cret\n"
        "    target: https://API.example.com\n"
        "  any:\n"
        "    username: anyone\n"
        "    password: pw\n"
    )
    store = FileCredentialStore(path)
    assert store.lookup("prod", "api.example.com:443").username == "deployer"
    assert store.lookup("prod", "api.other.com") is None
    assert store.lookup("any", "api.other.com").username == "anyone"
    assert store.lookup("missing") is None


def test_file_store_missing_file(tmp_path):
    assert FileCredentialStore(tmp_path / "none.yml").lookup("prod") is None


def test_chain_prefers_first_store():
    chain = ChainCredentialStore([
        EnvCredentialStore({}),
        EnvCredentialStore({"CFPUSH_CRED_A_USERNAME": "second", "CFPUSH_CRED_A_PASSWORD": "p"}),
    ])
    assert chain.lookup("a").username == "second"


def test_default_store_reads_credentials_file(tmp_path, monkeypatch):
    path = tmp_path / "creds.yml"
    path.write_text("credentials:\n  prod:\n    username: filed\n    password: pw\n")
    monkeypatch.setenv("CFPUSH_CREDENTIALS_FILE", str(path))
    assert default_store().lookup("prod").username == "filed"


@pytest.mark.parametrize("credentials_id", [None, "", "unknown"])
def test_require_credentials_fails_without_match(credentials_id):
    with pytest.raises(DeployError) as exc:
        require_credentials(EnvCredentialStore({}), credentials_id, "api.example.com")
    assert exc.value.kind is ErrorKind.CREDENTIALS_MISSING
