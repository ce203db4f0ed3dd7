import importlib

import pytest

from letterboxd_ingest import config


@pytest.fixture(autouse=True)
def restore_config(monkeypatch):
    yield
    monkeypatch.undo()
    importlib.reload(config)


def test_env_overrides_and_validation(monkeypatch):
    monkeypatch.setenv("LETTERBOXD_PAGE_DELAY", "2.5")
    monkeypatch.setenv("LETTERBOXD_CONSTRAINED_PAGE_DELAY", "-1")  # should clamp to min
    monkeypatch.setenv("LETTERBOXD_MEMORY_CLEANUP_INTERVAL", "0")  # min clamp

    cfg = importlib.reload(config)

    assert cfg.PAGE_DELAY == 2.5
    assert cfg.CONSTRAINED_PAGE_DELAY == 0.0
    assert cfg.MEMORY_CLEANUP_INTERVAL == 1


def test_db_path_respects_env(monkeypatch, tmp_path):
    db_path = tmp_path / "custom.db"
    monkeypatch.setenv("LETTERBOXD_DB", str(db_path))

    cfg = importlib.reload(config)

    assert cfg.DB_PATH == db_path


def test_invalid_env_values_fall_back_to_defaults(monkeypatch):
    monkeypatch.setenv("LETTERBOXD_PAGE_DELAY", "not-a-float")
    monkeypatch.setenv("LETTERBOXD_MEMORY_CLEANUP_INTERVAL", "bad-int")
    monkeypatch.setenv("LETTERBOXD_RATINGS_ZERO_FILL", "sometimes")

    cfg = importlib.reload(config)

    assert cfg.PAGE_DELAY == 1.0
    assert cfg.MEMORY_CLEANUP_INTERVAL == 5
    assert cfg.RATINGS_ZERO_FILL is True


@pytest.mark.parametrize("raw, expected", [("1", True), ("yes", True), ("off", False), ("FALSE", False)])
def test_bool_env_values(monkeypatch, raw, expected):
    monkeypatch.setenv("LETTERBOXD_CONSTRAINED", raw)
    cfg = importlib.reload(config)
    assert cfg.CONSTRAINED_MODE is expected


def test_constrained_flag_selects_profile(monkeypatch):
    monkeypatch.setenv("LETTERBOXD_CONSTRAINED", "1")
    cfg = importlib.reload(config)

    profile = cfg.get_execution_profile()
    assert profile.name == "constrained"
    assert profile.block_resources is True
    assert profile.viewport == cfg.VIEWPORT_CONSTRAINED
    assert "--single-process" in profile.launch_args
    # Tighter navigation timeouts than the default ladder
    assert [s.timeout for s in profile.loading_strategies] == [
        int(s.timeout * cfg.CONSTRAINED_TIMEOUT_FACTOR) for s in cfg.LOADING_STRATEGIES
    ]

    # Explicit override wins over the environment
    assert cfg.get_execution_profile(constrained=False).name == "default"


def test_launch_options_have_single_fallback():
    default = config.get_execution_profile(constrained=False)
    primary, fallback = default.launch_options()
    assert primary["headless"] is True
    assert "--disable-blink-features=AutomationControlled" in primary["args"]
    assert fallback["channel"] == "chrome"

    constrained = config.get_execution_profile(constrained=True)
    primary, fallback = constrained.launch_options()
    assert "channel" not in fallback
    assert fallback["args"] == config.CHROME_ARGS_FALLBACK


def test_star_patterns_are_ordered_longest_first():
    glyph_patterns = [p for p, _ in config.STAR_PATTERNS if p.startswith("★")]
    lengths = [len(p) for p in glyph_patterns]
    assert lengths == sorted(lengths, reverse=True)
    assert {rating for _, rating in config.STAR_PATTERNS} == set(config.ALL_RATINGS)
