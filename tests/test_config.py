import json

from roomrelay.config.loader import load_config, save_config
from roomrelay.config.schema import Config


def test_defaults():
    config = Config()
    assert config.rate_limit.max_per_window == 3
    assert config.rate_limit.window_ms == 1000
    assert config.cache.max_entries == 2000
    assert config.cache.shard_count == 16
    assert config.scheduler.sequential_threshold == 8
    assert config.pools.media_workers == 4
    assert config.pools.text_workers == 3


def test_accepts_camel_case(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps({
        "dataDir": str(tmp_path),
        "rateLimit": {"maxPerWindow": 5},
        "transport": {"baseUrl": "https://bot.example.com", "token": "t"},
    }), encoding="utf-8")

    config = load_config(path)

    assert config.rate_limit.max_per_window == 5
    assert config.transport.base_url == "https://bot.example.com"
    assert config.cache_path == tmp_path / "cache"


def test_save_round_trip_uses_camel_case(tmp_path):
    path = tmp_path / "nested" / "config.json"
    config = Config()
    config.retry.max_retries = 7

    save_config(config, path)

    data = json.loads(path.read_text(encoding="utf-8"))
    assert data["retry"]["maxRetries"] == 7
    assert load_config(path).retry.max_retries == 7


def test_invalid_file_falls_back_to_defaults(tmp_path):
    path = tmp_path / "config.json"
    path.write_text("{not json", encoding="utf-8")
    assert load_config(path) == Config()

    path.write_text(json.dumps({"cache": {"maxEntries": "many"}}), encoding="utf-8")
    assert load_config(path).cache.max_entries == 2000
