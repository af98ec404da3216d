import json
import logging
import pytest
from pydantic import ValidationError

from autoresearch.config import Settings
from autoresearch.core.config import GENERATED_DIR, LOGS_DIR, RESEARCH_SETTINGS
from autoresearch.core.logging import configure_logging, setup_job_logger


@pytest.mark.unit
def test_directories_exist():
    """Test that required directories are created."""
    assert GENERATED_DIR.exists()
    assert LOGS_DIR.exists()


@pytest.mark.unit
def test_research_depths_grow():
    quick, medium, deep = (RESEARCH_SETTINGS[d] for d in ("quick", "medium", "deep"))
    assert quick["max_total_sources"] < medium["max_total_sources"] < deep["max_total_sources"]
    assert deep["max_queries"] == 5


@pytest.mark.unit
def test_settings_timeout_policy_validation():
    assert Settings(_env_file=None, CLARIFICATION_TIMEOUT_POLICY=" FAIL ").CLARIFICATION_TIMEOUT_POLICY == "fail"
    with pytest.raises(ValidationError):
        Settings(_env_file=None, CLARIFICATION_TIMEOUT_POLICY="ignore")


@pytest.mark.unit
def test_chat_model_configured_only_in_settings():
    import autoresearch.core.config as core_config
    assert not hasattr(core_config, "OPENAI_MODEL")
    assert Settings(_env_file=None, OPENAI_MODEL="gpt-4o").OPENAI_MODEL == "gpt-4o"


@pytest.mark.unit
def test_allowed_origins_split():
    config = Settings(_env_file=None, ALLOWED_ORIGINS="http://a.test, http://b.test,")
    assert config.allowed_origins == ["http://a.test", "http://b.test"]


@pytest.mark.unit
def test_configure_logging_writes_json(tmp_path):
    log_file = tmp_path / "logs" / "app.log"
    root = logging.getLogger()
    saved = root.handlers[:]
    try:
        configure_logging("INFO", str(log_file))
        setup_job_logger("job-1").info("Stage research started")
        for handler in root.handlers:
            handler.flush()
    finally:
        for handler in root.handlers:
            handler.close()
        root.handlers = saved

    record = json.loads(log_file.read_text().splitlines()[-1])
    assert record["message"] == "Stage research started"
    assert record["name"] == "autoresearch.jobs"
