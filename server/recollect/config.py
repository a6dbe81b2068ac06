"""
Configuration loaded from environment variables.

Master secrets are read here and handed to the codec at call time; they are
never stored alongside the data they protect.
"""

import os
from typing import Dict

from recollect.errors import EncryptionError


def _env_float(name: str, default: float) -> float:
    value = os.getenv(name)
    return float(value) if value not in (None, "") else default


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    return int(value) if value not in (None, "") else default


# Storage
DATABASE_URL = os.getenv("DATABASE_URL", "sqlite:///./recollect_vault.db")

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")

# Matching
SCORING_POLICY = os.getenv("SCORING_POLICY", "exponential")
MATCH_STRATEGY = os.getenv("MATCH_STRATEGY", "adaptive_top_k")
COSINE_FIXED_THRESHOLD = _env_float("COSINE_FIXED_THRESHOLD", 0.9)
EXPONENTIAL_FIXED_THRESHOLD = _env_float("EXPONENTIAL_FIXED_THRESHOLD", 0.55)
ADAPTIVE_FLOOR = _env_float("ADAPTIVE_FLOOR", 0.6)
ADAPTIVE_SIGMA_MULTIPLIER = _env_float("ADAPTIVE_SIGMA_MULTIPLIER", 2.0)
MAX_MATCH_RESULTS = _env_int("MAX_MATCH_RESULTS", 9)

# Face detection
DETECTOR_MODEL = os.getenv("DETECTOR_MODEL", "hog")  # "hog" (CPU) or "cnn" (GPU)
MIN_DETECTION_CONFIDENCE = _env_float("MIN_DETECTION_CONFIDENCE", 0.7)
ASSEMBLY_WORKERS = _env_int("ASSEMBLY_WORKERS", 4)

# Uploads
MAX_UPLOAD_FILES = _env_int("MAX_UPLOAD_FILES", 10)
MAX_UPLOAD_BYTES = _env_int("MAX_UPLOAD_BYTES", 50 * 1024 * 1024)
ALLOWED_CONTENT_TYPES = ("image/jpeg", "image/png", "image/gif")

# CORS
CORS_ORIGINS = [
    origin.strip()
    for origin in os.getenv("CORS_ORIGINS", "*").split(",")
    if origin.strip()
]


def get_layer_secrets() -> Dict[str, str]:
    """
    Return the master secret for each envelope layer.

    Read on every call so a rotated environment is picked up without a
    restart.

    Raises:
        EncryptionError: if either secret is not configured
    """
    secrets = {
        "server": os.getenv("ENCRYPTION_MASTER_KEY", ""),
        "client": os.getenv("CLIENT_ENCRYPTION_KEY", ""),
    }
    missing = [name for name, value in secrets.items() if not value]
    if missing:
        raise EncryptionError(
            f"Encryption key not configured for layer(s): {', '.join(missing)}"
        )
    return secrets
