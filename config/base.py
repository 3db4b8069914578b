# config/base.py
import os


def _coerce_bool(value, default=False):
    """Convert environment-style truthy/falsey values to bool."""
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    value_str = str(value).strip().lower()
    if value_str in {"1", "true", "yes", "on"}:
        return True
    if value_str in {"0", "false", "no", "off"}:
        return False
    return default


def _coerce_int(value, default, *, minimum=1):
    """
    Parse an integer setting, falling back to ``default`` on garbage and
    clamping to ``minimum``.
    """
    if value is None or str(value).strip() == "":
        return default
    try:
        number = int(str(value).strip())
    except ValueError:
        return default
    return max(minimum, number)


class Config:
    _flask_env = os.environ.get("FLASK_ENV", "development")
    _config_dir = os.path.dirname(os.path.abspath(__file__))
    _project_root = os.path.dirname(_config_dir)

    SECRET_KEY = os.environ.get("SECRET_KEY", "legacy-bridge-cli")

    # Tracking database for migration runs (the Flask-SQLAlchemy bind).
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {}

    # Migrator configuration
    MIGRATOR_ENABLED = _coerce_bool(os.environ.get("MIGRATOR_ENABLED"), default=True)

    SOURCE_DATABASE_URL = os.environ.get("SOURCE_DATABASE_URL")
    SRC_HOST = os.environ.get("SRC_HOST")
    SRC_PORT = os.environ.get("SRC_PORT", "5432")
    SRC_USER = os.environ.get("SRC_USER")
    SRC_PASS = os.environ.get("SRC_PASS")
    SRC_DB = os.environ.get("SRC_DB")

    DESTINATION_DATABASE_URL = os.environ.get("DESTINATION_DATABASE_URL")
    DST_HOST = os.environ.get("DST_HOST")
    DST_PORT = os.environ.get("DST_PORT", "5432")
    DST_USER = os.environ.get("DST_USER")
    DST_PASS = os.environ.get("DST_PASS")
    DST_DB = os.environ.get("DST_DB")

    TENANT_ID = os.environ.get("TENANT_ID") or None

    MIGRATOR_FETCH_SIZE = _coerce_int(os.environ.get("MIGRATOR_FETCH_SIZE"), 2000)
    MIGRATOR_INSERT_CHUNK_SIZE = _coerce_int(os.environ.get("MIGRATOR_INSERT_CHUNK_SIZE"), 500)
    MIGRATOR_SYNTHETIC_KEY_MAX_ATTEMPTS = _coerce_int(os.environ.get("MIGRATOR_SYNTHETIC_KEY_MAX_ATTEMPTS"), 50)
    MIGRATOR_RELAXED_DURABILITY = _coerce_bool(os.environ.get("MIGRATOR_RELAXED_DURABILITY"), default=True)

    MIGRATOR_TASKS_DEFAULT_TYPE = _coerce_bool(os.environ.get("MIGRATOR_TASKS_DEFAULT_TYPE"), default=False)
    MIGRATOR_TASKS_DEFAULT_TYPE_NAME = os.environ.get("MIGRATOR_TASKS_DEFAULT_TYPE_NAME", "Geral")
    MIGRATOR_TAGS_ASSIGN_ALL_USERS = _coerce_bool(os.environ.get("MIGRATOR_TAGS_ASSIGN_ALL_USERS"), default=False)

    MIGRATOR_SKIP_REPORT_DIR = os.environ.get("MIGRATOR_SKIP_REPORT_DIR", os.path.join(_project_root, "reports"))
    MIGRATOR_PROGRESS_DIR = os.environ.get("MIGRATOR_PROGRESS_DIR", _project_root)
    MIGRATOR_ENUM_TABLES_PATH = os.environ.get(
        "MIGRATOR_ENUM_TABLES_PATH",
        os.path.join(_config_dir, "mappings", "legacy_enums.yaml"),
    )
    # Keyword arguments for create_engine on both migration sides.
    MIGRATOR_ENGINE_OPTIONS = {"pool_pre_ping": True}


class DevelopmentConfig(Config):
    DEBUG = True
    # Use instance folder for the tracking database
    instance_path = os.path.join(Config._project_root, "instance")

    if not os.path.exists(instance_path):
        os.makedirs(instance_path, exist_ok=True)

    # SQLite URI format: sqlite:///absolute/path (3 slashes for absolute path)
    db_path_normalized = os.path.join(instance_path, "legacy_bridge_dev.db").replace("\\", "/")
    db_uri = f"sqlite:///{db_path_normalized}"

    SQLALCHEMY_DATABASE_URI = os.environ.get("DATABASE_URL", db_uri)
    SQLALCHEMY_ECHO = False
    if SQLALCHEMY_DATABASE_URI.startswith("sqlite"):
        SQLALCHEMY_ENGINE_OPTIONS = {
            "connect_args": {
                "check_same_thread": False,
                "timeout": 5,
            }
        }
    else:
        SQLALCHEMY_ENGINE_OPTIONS = {}


class TestingConfig(Config):
    TESTING = True
    SECRET_KEY = os.environ.get("SECRET_KEY", "test-secret-key-for-testing-only")
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"  # In-memory database for testing
    SQLALCHEMY_ECHO = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        "connect_args": {
            "check_same_thread": False,
            "timeout": 5,
        }
    }
    MIGRATOR_FETCH_SIZE = 1000
    MIGRATOR_INSERT_CHUNK_SIZE = 200
    MIGRATOR_RELAXED_DURABILITY = False
    MIGRATOR_SKIP_REPORT_DIR = None
    MIGRATOR_ENGINE_OPTIONS = {}


class ProductionConfig(Config):
    DEBUG = False
    uri = os.environ.get("DATABASE_URL")
    if uri and uri.startswith("postgres://"):
        uri = uri.replace("postgres://", "postgresql://", 1)
    SQLALCHEMY_DATABASE_URI = uri
    SQLALCHEMY_ECHO = False
