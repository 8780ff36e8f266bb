import pytest

from pairchat.config import load_settings, normalize_database_url, parse_cors_origins

ENV_VARS = [
    "DATA_DIR",
    "PUBLIC_DIR",
    "UPLOAD_DIR",
    "DATABASE_URL",
    "CORS_ORIGINS",
    "MAX_UPLOAD_MB",
    "MESSAGE_EXPIRY_HOURS",
    "LOG_LEVEL",
    "PORT",
    "CLOUDINARY_CLOUD_NAME",
    "CLOUDINARY_API_KEY",
    "CLOUDINARY_API_SECRET",
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)


def test_defaults_without_env():
    settings = load_settings()

    assert settings.data_dir == "data"
    assert settings.database_url == ""
    assert settings.cloudinary is None
    assert settings.cors_origins == ["http://localhost"]
    assert settings.max_upload_bytes == 50 * 1024 * 1024
    assert settings.retention_seconds == 24 * 3600
    assert settings.port == 80


def test_cors_origins_default_localhost():
    assert parse_cors_origins(None) == ["http://localhost"]
    assert parse_cors_origins("  ,  ") == ["http://localhost"]


def test_cors_origins_csv_parsing(monkeypatch):
    monkeypatch.setenv("CORS_ORIGINS", "https://app.example.com, http://localhost:5173,https://app.example.com")

    settings = load_settings()

    assert settings.cors_origins == ["https://app.example.com", "http://localhost:5173"]


def test_upload_dir_follows_public_dir(monkeypatch):
    monkeypatch.setenv("PUBLIC_DIR", "/srv/site")

    assert load_settings().upload_dir.replace("\\", "/") == "/srv/site/uploads"


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("postgres://u:p@db:5432/chat", "postgresql://u:p@db:5432/chat"),
        ("postgresql://u:p@db/chat", "postgresql://u:p@db/chat"),
        ("  ", ""),
        (None, ""),
    ],
)
def test_database_url_normalized(raw, expected):
    assert normalize_database_url(raw) == expected


def test_cloudinary_enabled_when_all_vars_set(monkeypatch):
    monkeypatch.setenv("CLOUDINARY_CLOUD_NAME", "demo")
    monkeypatch.setenv("CLOUDINARY_API_KEY", "key")
    monkeypatch.setenv("CLOUDINARY_API_SECRET", "secret")

    settings = load_settings()

    assert settings.cloudinary.cloud_name == "demo"


def test_explicit_environ_mapping_ignores_process_env(monkeypatch):
    monkeypatch.setenv("DATA_DIR", "/from/process")

    assert load_settings({"DATA_DIR": "/from/mapping"}).data_dir == "/from/mapping"
