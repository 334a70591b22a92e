"""
LocalVault Configuration Manager
Centralizes path definitions and environment variable loading.
"""
import os
from pathlib import Path
from dotenv import load_dotenv

from localvault._build import BUILD_MODE

# 1. Locate the Project Root
# Assumes structure: project/localvault/config.py
PROJECT_ROOT = Path(__file__).resolve().parent.parent

# 2. Load .env file
load_dotenv(PROJECT_ROOT / ".env")

# 3. Define Default Paths
DEFAULT_DATA_DIR = PROJECT_ROOT / "data"
DEFAULT_DB_PATH = DEFAULT_DATA_DIR / "vault.db"

# 4. Export Configuration
# Priority: Environment Variable -> .env file -> Default
DB_PATH = os.getenv("LOCALVAULT_DB_PATH", str(DEFAULT_DB_PATH))

LICENSE_SERVER_URL = os.getenv(
    "LOCALVAULT_LICENSE_SERVER_URL", "https://api.localpasswordvault.com"
)
LICENSE_SIGNING_SECRET = os.getenv("LOCALVAULT_LICENSE_SIGNING_SECRET", "")
FINGERPRINT_SALT = os.getenv(
    "LOCALVAULT_FINGERPRINT_SALT", "LOCALVAULT_DEV_SALT_CHANGE_IN_PRODUCTION"
)

# Build mode comes from _build.py, never from the environment. Only a
# development build accepts unsigned license/trial records.
ALLOW_UNSIGNED_RECORDS = BUILD_MODE == "development"

HTTP_TIMEOUT_SECONDS = float(os.getenv("LOCALVAULT_HTTP_TIMEOUT", "15"))
HTTP_RETRIES = int(os.getenv("LOCALVAULT_HTTP_RETRIES", "2"))

# Ensure data directory exists if we are using the default path
if str(DEFAULT_DATA_DIR) in DB_PATH:
    os.makedirs(os.path.dirname(DB_PATH), exist_ok=True)
