"""
Earshot Configuration Loader
Loads values from settings.json via the settings manager.
"""
import os
import sys
from pathlib import Path

from dotenv import load_dotenv

from settings import settings

# ==========================================
# Path Configuration
# ==========================================
if getattr(sys, 'frozen', False):
    ROOT_DIR = Path(sys.executable).parent
else:
    ROOT_DIR = Path(__file__).parent

# ==========================================
# Version
# ==========================================
VERSION = "0.4.0"

env_file = ROOT_DIR / '.env'
if env_file.exists():
    load_dotenv(env_file)


# Helper to prefer Env Var > Settings JSON > Default
def conf(key, default=None):
    # 1. Check Env Var (Highest Priority - good for docker/dev)
    env_val = os.getenv(key.upper().replace('.', '_'))
    if env_val is not None:
        return settings.convert(key, env_val)

    # 2. Check Settings JSON
    json_val = settings.get(key)
    if json_val is not None:
        return json_val

    # 3. Default
    return default


# ==========================================
# EXPORTED CONFIG DICTS
# ==========================================

# Song history lives here; override for portable installs and tests
DATA_DIR = Path(os.getenv("EARSHOT_DATA_DIR", str(ROOT_DIR / "data")))

try:
    DATA_DIR.mkdir(parents=True, exist_ok=True)
except OSError as e:
    # Can't use logger here (not configured yet), so use print
    print(f"Warning: Failed to create directory {DATA_DIR}: {e}")

DEBUG = {
    "log_file": conf("debug.log_file", "earshot.log"),
    "log_level": conf("debug.log_level", "INFO"),
    "log_to_console": conf("debug.log_to_console", False),
    "log_detailed": conf("debug.log_detailed", False),
    "log_rotation": {
        "max_bytes": int(conf("debug.log_rotation.max_bytes", 1048576)),
        "backup_count": int(conf("debug.log_rotation.backup_count", 10)),
    },
}

AUDIO_RECOGNITION = {
    "provider": conf("audio_recognition.provider", "audd"),
    "listen_timeout": float(conf("audio_recognition.listen_timeout", 10.0)),
    "stop_timeout": float(conf("audio_recognition.stop_timeout", 2.0)),
    "sample_rate": 16000,
    "peak_interval": 0.08,
}

AUDD = {
    # Token is only read from the environment (.env), never from settings.json
    "api_token": os.getenv("AUDD_API_TOKEN", ""),
    "base_url": conf("audd.base_url", "https://api.audd.io/"),
    "timeout": int(conf("audd.timeout", 30)),
}

SHAZAM = {
    "language": conf("shazam.language", "en-US"),
    "endpoint_country": conf("shazam.endpoint_country", "GB"),
}

STORAGE = {
    "database": Path(os.getenv("EARSHOT_DATABASE", str(DATA_DIR / "songs.db"))),
}
