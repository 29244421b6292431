# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.
"""Health certificate verifier configuration.

Policy constants carry the national defaults and may be overridden via
environment variables.  Everything is read once at import time.
"""

import hashlib
import json
import os

# =============================================================================
# POLICY CONSTANTS (validity windows)
# =============================================================================

MAX_VACCINATION_VALIDITY_DAYS: int = int(os.getenv("HCERT_MAX_VACCINATION_VALIDITY_DAYS", "365"))
DAYS_AFTER_FIRST_SHOT_FOR_SINGLE_DOSE: int = int(os.getenv("HCERT_DAYS_AFTER_FIRST_SHOT", "15"))
PCR_TEST_VALIDITY_HOURS: int = int(os.getenv("HCERT_PCR_TEST_VALIDITY_HOURS", "72"))
RAT_TEST_VALIDITY_HOURS: int = int(os.getenv("HCERT_RAT_TEST_VALIDITY_HOURS", "24"))
RECOVERY_VALIDITY_OFFSET_DAYS: int = int(os.getenv("HCERT_RECOVERY_VALIDITY_OFFSET_DAYS", "10"))
RECOVERY_MAX_VALIDITY_DAYS: int = int(os.getenv("HCERT_RECOVERY_MAX_VALIDITY_DAYS", "180"))

# Calendar in which day offsets are added (DST-aware).
EVALUATION_TIMEZONE: str = os.getenv("HCERT_EVALUATION_TIMEZONE", "Europe/Zurich")

# =============================================================================
# SESSION
# =============================================================================

ENVIRONMENT: str = os.getenv("HCERT_ENVIRONMENT", "dev")
API_KEY: str = os.getenv("HCERT_API_KEY", "")
DEFAULT_COUNTRY_CODE: str = os.getenv("HCERT_DEFAULT_COUNTRY_CODE", "CH")

# "package.module:factory" returning the external collaborators.
COLLABORATORS: str = os.getenv("HCERT_COLLABORATORS", "")

# =============================================================================
# TRUST BACKENDS
# =============================================================================

TRUST_BACKEND_DEV: str = os.getenv("HCERT_TRUST_BACKEND_DEV", "https://www.cc-d.bit.admin.ch/trust")
TRUST_BACKEND_ABN: str = os.getenv("HCERT_TRUST_BACKEND_ABN", "https://www.cc-a.bit.admin.ch/trust")
TRUST_BACKEND_PROD: str = os.getenv("HCERT_TRUST_BACKEND_PROD", "https://www.cc.bit.admin.ch/trust")
TRUST_BACKEND_VERSION: str = os.getenv("HCERT_TRUST_BACKEND_VERSION", "v1")

DISTRIBUTION_TIMEOUT_SECONDS: float = float(os.getenv("HCERT_DISTRIBUTION_TIMEOUT", "10.0"))
TRUST_LIST_MAX_AGE_SECONDS: float = float(os.getenv("HCERT_TRUST_LIST_MAX_AGE_SECONDS", "172800"))

# =============================================================================
# NETWORK
# =============================================================================

HTTP_HOST: str = os.getenv("HCERT_HTTP_HOST", "0.0.0.0")
HTTP_PORT: int = int(os.getenv("HCERT_HTTP_PORT", "8000"))

# =============================================================================
# LOGGING
# =============================================================================

LOG_LEVEL: str = os.getenv("HCERT_LOG_LEVEL", "INFO")
LOG_FORMAT: str = os.getenv("HCERT_LOG_FORMAT", "json")


# =============================================================================
# CONFIG FINGERPRINT
# =============================================================================

def config_fingerprint() -> str:
    """SHA256 of validity-affecting settings, reported by the health check."""
    data = json.dumps({
        "max_vaccination_validity_days": MAX_VACCINATION_VALIDITY_DAYS,
        "days_after_first_shot": DAYS_AFTER_FIRST_SHOT_FOR_SINGLE_DOSE,
        "pcr_hours": PCR_TEST_VALIDITY_HOURS,
        "rat_hours": RAT_TEST_VALIDITY_HOURS,
        "recovery_offset_days": RECOVERY_VALIDITY_OFFSET_DAYS,
        "recovery_max_days": RECOVERY_MAX_VALIDITY_DAYS,
        "timezone": EVALUATION_TIMEZONE,
    }, sort_keys=True)
    return hashlib.sha256(data.encode()).hexdigest()[:16]
