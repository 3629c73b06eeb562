"""Root pytest configuration for ocipkg tests."""
import pytest

from ocipkg.registry import CredentialStore, RegistrySession
from ocipkg.settings import Settings
from ocipkg.store import LocalStore

from .fakes.fake_registry import FakeRegistry

# Import fixtures to make them available
from .fixtures.oci_registry import oci_registry  # noqa: F401


# Configure pytest markers
def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers",
        "integration: mark test as integration test (requires Docker)"
    )
    config.addinivalue_line(
        "markers",
        "slow: mark test as slow (may take significant time)"
    )


# Keep tests away from the user's store and credentials
@pytest.fixture(autouse=True)
def test_env(monkeypatch, tmp_path):
    """Automatically set up test environment variables."""
    monkeypatch.setenv("OCIPKG_DATA_DIR", str(tmp_path / "store"))
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "config"))
    monkeypatch.setenv("DOCKER_CONFIG", str(tmp_path / "docker"))
    monkeypatch.delenv("XDG_RUNTIME_DIR", raising=False)
    for var in ("OCIPKG_REGISTRY_USERNAME", "OCIPKG_REGISTRY_PASSWORD", "OCIPKG_REGISTRY_INSECURE"):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setenv("OCIPKG_RETRY_BACKOFF", "0")


@pytest.fixture
def settings(tmp_path):
    """Standard test settings: no backoff, small chunks."""
    return Settings(
        data_dir=tmp_path / "store",
        http_retry=2,
        retry_backoff_s=0.0,
        chunk_size=1024,
        chunked_threshold=4096,
        max_workers=4,
    )


@pytest.fixture
def credentials(tmp_path):
    """Credential store that only reads files under tmp_path."""
    return CredentialStore(config_paths=[], auth_file=tmp_path / "config" / "auth.json")


@pytest.fixture
def fake_registry():
    """In-memory registry without auth."""
    return FakeRegistry()


@pytest.fixture
def session(settings, credentials, fake_registry):
    """Registry session routed to the fake registry."""
    with RegistrySession(settings, credentials=credentials, transport=fake_registry.transport) as s:
        yield s


@pytest.fixture
def store(settings, session):
    """Local store backed by the fake registry."""
    return LocalStore(settings=settings, session=session)


@pytest.fixture
def sample_files(tmp_path):
    """a.txt holding "hi" and b.bin holding 512 random bytes."""
    src = tmp_path / "inputs"
    src.mkdir()
    (src / "a.txt").write_bytes(b"hi")
    (src / "b.bin").write_bytes(bytes((i * 97 + 13) % 256 for i in range(512)))
    return [src / "a.txt", src / "b.bin"]

