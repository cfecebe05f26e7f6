import pytest

from chronicles.storage import Storage

_PROVIDER_ENV = (
    "DEFAULT_LLM_PROVIDER",
    "DEFAULT_LLM_MODEL",
    "GEMINI_API_KEY",
    "OPENAI_API_KEY",
    "OPENAI_BASE_URL",
)


@pytest.fixture(autouse=True)
def storage(tmp_path, monkeypatch):
    """Fresh save directory per test, and no provider credentials from the shell."""
    for name in _PROVIDER_ENV:
        monkeypatch.delenv(name, raising=False)
    return Storage(tmp_path / "data-tests")
