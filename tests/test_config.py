import importlib

from n8n_monitor import config


def test_monitor_execution_limit_is_clamped(monkeypatch):
    try:
        monkeypatch.setenv("N8N_MONITOR_EXECUTION_LIMIT", "500")
        importlib.reload(config)
        assert config.MONITOR_EXECUTION_LIMIT == config.EXECUTION_SYNC_MAX_LIMIT

        monkeypatch.setenv("N8N_MONITOR_EXECUTION_LIMIT", "0")
        importlib.reload(config)
        assert config.MONITOR_EXECUTION_LIMIT == 1
    finally:
        monkeypatch.delenv("N8N_MONITOR_EXECUTION_LIMIT", raising=False)
        importlib.reload(config)
    assert config.MONITOR_EXECUTION_LIMIT == 100
