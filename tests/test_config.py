"""
Tests for TOML configuration, error logging and the ops log.
"""

import logging

import pytest

from recall.config import (
    CONFIG_FILENAME,
    DEFAULT_EMBEDDING_DIMENSION,
    StoreConfig,
    get_default_store_path,
    load_config,
    load_or_create_config,
    save_config,
)
from recall.errors import (
    ConfigError,
    NotFoundError,
    QueryError,
    RecallError,
    log_exception,
)
from recall.logging_config import configure_ops_log, remove_ops_log


class TestStoreConfig:

    def test_create_with_defaults(self, tmp_path):
        config = load_or_create_config(tmp_path)
        assert config.embedding_dimension == DEFAULT_EMBEDDING_DIMENSION
        assert config.k1 == 1.2
        assert config.b == 0.75
        assert config.retention_days == 0
        assert (tmp_path / CONFIG_FILENAME).exists()

    def test_save_and_load_roundtrip(self, tmp_path):
        config = StoreConfig(path=tmp_path, embedding_dimension=768, alpha=0.7,
                             default_top_k=5, retention_days=30)
        save_config(config)

        loaded = load_config(tmp_path)
        assert loaded.embedding_dimension == 768
        assert loaded.alpha == 0.7
        assert loaded.default_top_k == 5
        assert loaded.retention_days == 30
        assert loaded.created == config.created

    def test_partial_file_uses_defaults(self, tmp_path):
        (tmp_path / CONFIG_FILENAME).write_text("[fusion]\nalpha = 0.25\n")
        config = load_config(tmp_path)
        assert config.alpha == 0.25
        assert config.embedding_dimension == DEFAULT_EMBEDDING_DIMENSION

    def test_missing_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path)

    def test_malformed_toml(self, tmp_path):
        (tmp_path / CONFIG_FILENAME).write_text("[fusion\nalpha = ")
        with pytest.raises(ConfigError):
            load_config(tmp_path)

    def test_newer_version_rejected(self, tmp_path):
        (tmp_path / CONFIG_FILENAME).write_text("[store]\nversion = 99\n")
        with pytest.raises(ConfigError, match="newer"):
            load_config(tmp_path)

    @pytest.mark.parametrize("field,value", [
        ("embedding_dimension", 0),
        ("k1", -1.0),
        ("b", 1.5),
        ("alpha", 1.01),
        ("alpha", float("nan")),
        ("default_top_k", 0),
        ("candidate_multiplier", 0),
        ("retention_days", -1),
    ])
    def test_invalid_values(self, tmp_path, field, value):
        config = StoreConfig(path=tmp_path, **{field: value})
        with pytest.raises(ConfigError):
            config.validate()

    def test_invalid_value_in_file(self, tmp_path):
        (tmp_path / CONFIG_FILENAME).write_text("[embedding]\ndimension = -3\n")
        with pytest.raises(ConfigError):
            load_or_create_config(tmp_path)

    def test_default_path_from_env(self, tmp_path, monkeypatch):
        monkeypatch.setenv("RECALL_STORE_PATH", str(tmp_path / "env-store"))
        assert get_default_store_path() == (tmp_path / "env-store").resolve()

    def test_paths(self, tmp_path):
        config = StoreConfig(path=tmp_path)
        assert config.config_path == tmp_path / CONFIG_FILENAME
        assert config.items_path == tmp_path / "items.db"
        assert not config.exists()


class TestErrors:

    def test_hierarchy(self):
        assert issubclass(ConfigError, ValueError)
        assert issubclass(QueryError, ValueError)
        assert issubclass(NotFoundError, KeyError)
        for cls in (ConfigError, QueryError, NotFoundError):
            assert issubclass(cls, RecallError)

    def test_not_found_message_unquoted(self):
        assert str(NotFoundError("Item not found: abc")) == "Item not found: abc"

    def test_log_exception_writes_traceback(self, tmp_path, monkeypatch):
        monkeypatch.setenv("RECALL_STORE_PATH", str(tmp_path))
        try:
            raise QueryError("bad query")
        except QueryError as e:
            path = log_exception(e, context="test")

        assert path == tmp_path / "recall-errors.log"
        content = path.read_text()
        assert "test QueryError: bad query" in content
        assert "Traceback" in content


class TestOpsLog:

    def test_info_records_written(self, tmp_path):
        handler = configure_ops_log(tmp_path)
        try:
            logging.getLogger("recall.test").info("ops line %d", 42)
        finally:
            remove_ops_log(handler)

        assert "ops line 42" in (tmp_path / "recall-ops.log").read_text()
        assert handler not in logging.getLogger("recall").handlers
