"""
Root conftest for tests.

Settings and the process-wide circuit breaker are cached with lru_cache;
clearing them around every test keeps environment overrides from leaking.
"""

import pytest

from config.settings import get_settings
from libs.common.circuit_breaker import get_circuit_breaker
from libs.common.logging.context import clear_pipeline_id


@pytest.fixture(autouse=True)
def _reset_process_singletons():
    get_settings.cache_clear()
    get_circuit_breaker.cache_clear()
    clear_pipeline_id()
    yield
    get_settings.cache_clear()
    get_circuit_breaker.cache_clear()
    clear_pipeline_id()
