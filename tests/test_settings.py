import json

import pytest

from conftest import VALID_ENV
from utils.settings import ConfigError, load_settings


def test_valid_environment_with_defaults():
    s = load_settings(VALID_ENV)
    assert s.ticketing_api_base_url == "https://api.ticketing.example.com/v1"
    assert s.ticketing_client_secret.get_secret_value() == "s3cret-client"
    assert s.certificates_bucket == "certificates"
    assert s.ollama_host == "http://localhost:11434"
    assert (s.poll_limit, s.process_concurrency, s.db_pool_max) == (100, 1, 10)


def test_overrides_are_parsed():
    s = load_settings({**VALID_ENV, "POLL_LIMIT": "25", "PROCESS_CONCURRENCY": "4", "CERTIFICATES_BUCKET": "certs"})
    assert (s.poll_limit, s.process_concurrency, s.certificates_bucket) == (25, 4, "certs")


def test_every_missing_variable_is_reported():
    env = {k: v for k, v in VALID_ENV.items() if k not in ("TICKETING_CLIENT_ID", "DATABASE_URL")}
    env["SUPABASE_SERVICE_KEY"] = ""
    with pytest.raises(ConfigError) as info:
        load_settings(env)
    message = str(info.value)
    for name in ("TICKETING_CLIENT_ID", "DATABASE_URL", "SUPABASE_SERVICE_KEY"):
        assert name in message


@pytest.mark.parametrize("key, value", [
    ("TICKETING_API_BASE_URL", "api.ticketing.example.com"),
    ("SUPABASE_URL", "ftp://project.supabase.co"),
    ("DATABASE_URL", "mysql://localhost/certs"),
    ("POLL_LIMIT", "0"),
])
def test_malformed_values_are_rejected(key, value):
    with pytest.raises(ConfigError) as info:
        load_settings({**VALID_ENV, key: value})
    assert key in str(info.value)


def test_public_view_has_no_secrets():
    view = json.dumps(load_settings(VALID_ENV).public_view())
    assert "s3cret" not in view
    assert "supabase.co" in view
