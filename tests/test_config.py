import textwrap

from config import Config, config, get_logger


def test_relay_entries_are_normalized():
    relays = config._parse_relays([
        "https://corsproxy.io/?",
        {"url": "https://api.allorigins.win/get?url=", "format": "JSON"},
        {"url": "https://odd.example/?u=", "format": "xml"},
        {"format": "json"},
        "  ",
        42,
    ])

    assert relays == [
        {"url": "https://corsproxy.io/?", "format": "text"},
        {"url": "https://api.allorigins.win/get?url=", "format": "json"},
        {"url": "https://odd.example/?u=", "format": "text"},
    ]


def test_relays_must_be_a_list():
    assert config._parse_relays(None) == []
    assert config._parse_relays("https://corsproxy.io/?") == []


def test_feeds_file_and_env_override(tmp_path, monkeypatch):
    feeds_file = tmp_path / "feeds.yaml"
    feeds_file.write_text(textwrap.dedent("""
        relays:
          - "https://relay.example/?"
        schedule:
          timezone: Europe/Lisbon
          times: ["07:00"]
    """))
    monkeypatch.setenv("FEEDS_CONFIG_PATH", str(feeds_file))
    monkeypatch.delenv("FEED_RELAYS", raising=False)

    loaded = Config()

    assert loaded.RELAYS == [{"url": "https://relay.example/?", "format": "text"}]
    assert loaded.SCHEDULE == {"timezone": "Europe/Lisbon", "times": ["07:00"]}

    monkeypatch.setenv("FEED_RELAYS", "https://a.example/?,https://b.example/?")
    loaded.reload_feeds_config()

    assert [relay["url"] for relay in loaded.RELAYS] == ["https://a.example/?", "https://b.example/?"]


def test_missing_feeds_file_uses_defaults(tmp_path, monkeypatch):
    monkeypatch.setenv("FEEDS_CONFIG_PATH", str(tmp_path / "absent.yaml"))
    monkeypatch.setenv("FEED_RELAYS", "")

    loaded = Config()

    assert loaded.RELAYS == []
    assert loaded.SCHEDULE == ["08:00"]


def test_invalid_numbers_fall_back_to_defaults(monkeypatch):
    monkeypatch.setenv("HTTP_TIMEOUT", "soon")
    monkeypatch.setenv("BATCH_CONCURRENCY", "0")

    loaded = Config()

    assert loaded.HTTP_TIMEOUT == 30
    assert loaded.BATCH_CONCURRENCY == 5


def test_loggers_share_the_application_root():
    assert get_logger("fetcher").name == "ChangelogAggregator.fetcher"
