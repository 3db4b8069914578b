# config/validation.py

"""
Environment variable validation for the legacy migrator.
Validates connection settings at startup.
"""

import os
import sys
from typing import List, Tuple


def _side_configured(url_key: str, prefix: str) -> bool:
    if os.environ.get(url_key):
        return True
    return bool(os.environ.get(f"{prefix}_HOST") and os.environ.get(f"{prefix}_DB"))


def validate_environment(flask_env: str = None) -> Tuple[bool, List[str]]:
    """
    Validate required environment variables.

    Args:
        flask_env: Flask environment (development, production, testing)
                  If None, reads from FLASK_ENV environment variable

    Returns:
        Tuple of (is_valid, list_of_errors)
    """
    if flask_env is None:
        flask_env = os.environ.get("FLASK_ENV", "development")

    errors = []

    # Only validate in production
    if flask_env != "production":
        return True, []

    if not os.environ.get("DATABASE_URL"):
        errors.append("DATABASE_URL is required in production. Set it to the run-tracking database.")

    if not _side_configured("SOURCE_DATABASE_URL", "SRC"):
        errors.append("SOURCE_DATABASE_URL or SRC_HOST/SRC_DB is required to read the legacy database.")

    if not _side_configured("DESTINATION_DATABASE_URL", "DST"):
        errors.append("DESTINATION_DATABASE_URL or DST_HOST/DST_DB is required to write the destination database.")

    tenant_id = os.environ.get("TENANT_ID", "").strip()
    if tenant_id and not tenant_id.isdigit():
        errors.append(f"TENANT_ID must be an integer, got {tenant_id!r}")

    is_valid = len(errors) == 0
    return is_valid, errors


def validate_and_exit(flask_env: str = None) -> None:
    """
    Validate environment variables and exit with error if validation fails.
    Intended to be called at application startup.

    Args:
        flask_env: Flask environment (development, production, testing)
    """
    is_valid, errors = validate_environment(flask_env)

    if not is_valid:
        print("=" * 80, file=sys.stderr)
        print("ENVIRONMENT VALIDATION FAILED", file=sys.stderr)
        print("=" * 80, file=sys.stderr)
        print("\nThe following environment variables are missing or invalid:\n", file=sys.stderr)

        for i, error in enumerate(errors, 1):
            print(f"{i}. {error}", file=sys.stderr)

        print("\n" + "=" * 80, file=sys.stderr)
        print("Please check your .env file or environment variables.", file=sys.stderr)
        print("=" * 80, file=sys.stderr)

        sys.exit(1)
