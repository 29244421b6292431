# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.
"""Health certificate verification exceptions mapped to error codes.

Codes are prefixed by the stage that produced them: ``D|`` decode,
``S|`` signature/trust, ``N|`` national rules, ``T|`` trust-material
distribution.
"""


class CovidCertError(Exception):
    """Base exception for health certificate verification errors."""

    def __init__(self, code: str, message: str):
        self.code = code
        self.message = message
        super().__init__(message)


class DecodeError(CovidCertError):
    """The credential envelope could not be decoded."""

    NOT_IMPLEMENTED = "D|NI"
    INVALID_SCHEME_PREFIX = "D|ISP"
    BASE_45_DECODING_FAILED = "D|B45"
    DECOMPRESSION_FAILED = "D|ZLB"
    COSE_DESERIALIZATION_FAILED = "D|CDF"
    HCERT_IS_INVALID = "D|HII"

    @classmethod
    def invalid_scheme_prefix(cls, prefix: str = "") -> "DecodeError":
        detail = f" (got {prefix!r})" if prefix else ""
        return cls(code=cls.INVALID_SCHEME_PREFIX, message=f"Invalid scheme prefix{detail}")

    @classmethod
    def base45_failed(cls, reason: str) -> "DecodeError":
        return cls(code=cls.BASE_45_DECODING_FAILED, message=f"Base45 decoding failed: {reason}")

    @classmethod
    def decompression_failed(cls, reason: str) -> "DecodeError":
        return cls(code=cls.DECOMPRESSION_FAILED, message=f"Decompression failed: {reason}")

    @classmethod
    def envelope_failed(cls, reason: str) -> "DecodeError":
        return cls(
            code=cls.COSE_DESERIALIZATION_FAILED,
            message=f"Envelope deserialization failed: {reason}",
        )

    @classmethod
    def from_validation_error(cls, name: str, message: str = "") -> "DecodeError":
        """Map a collaborator validation error name onto a decode error.

        Binary-map (CBOR) failures collapse into the envelope code, as does
        anything unrecognised.
        """
        code = {
            "INVALID_SCHEME_PREFIX": cls.INVALID_SCHEME_PREFIX,
            "BASE_45_DECODING_FAILED": cls.BASE_45_DECODING_FAILED,
            "DECOMPRESSION_FAILED": cls.DECOMPRESSION_FAILED,
            "COSE_DESERIALIZATION_FAILED": cls.COSE_DESERIALIZATION_FAILED,
            "CBOR_DESERIALIZATION_FAILED": cls.COSE_DESERIALIZATION_FAILED,
        }.get(name, cls.COSE_DESERIALIZATION_FAILED)
        return cls(code=code, message=message or name)

    @property
    def is_scheme_prefix_mismatch(self) -> bool:
        return self.code == self.INVALID_SCHEME_PREFIX


class MalformedCredential(DecodeError):
    """The credential type has no populated record to validate."""

    def __init__(self, message: str):
        super().__init__(code=DecodeError.HCERT_IS_INVALID, message=message)

    @classmethod
    def no_records(cls, credential_type: str) -> "MalformedCredential":
        return cls(f"{credential_type} credential carries no records")

    @classmethod
    def index_out_of_range(cls, credential_type: str, index: int, count: int) -> "MalformedCredential":
        return cls(
            f"{credential_type} record index {index} out of range "
            f"(credential carries {count})"
        )


class TrustError(CovidCertError):
    """Signature or trust-anchor verification failure.

    ``error_name`` is the discriminant reported by the trust engine
    (e.g. ``SIGNATURE_INVALID``, ``KEY_NOT_IN_TRUST_LIST``).
    """

    def __init__(self, error_name: str, message: str = ""):
        self.error_name = error_name
        super().__init__(code=f"S|{error_name}", message=message or f"Trust check failed: {error_name}")

    @classmethod
    def general(cls, message: str = "Trust check failed") -> "TrustError":
        return cls("GENERAL_ERROR", message)

    @classmethod
    def exemption_rejected(cls, error_name: str) -> "TrustError":
        return cls(error_name, f"Exemption envelope rejected by trust check: {error_name}")


class RuleEngineError(CovidCertError):
    """Jurisdiction rule evaluation failed; surfaced verbatim."""

    def __init__(self, message: str, error_name: str = "RULE_EVALUATION_FAILED"):
        self.error_name = error_name
        super().__init__(code=f"N|{error_name}", message=message)


class DistributionError(CovidCertError):
    """Trust list, rule set or value set refresh failed."""

    def __init__(self, error_name: str, message: str):
        self.error_name = error_name
        super().__init__(code=f"T|{error_name}", message=message)

    @classmethod
    def network(cls, reason: str) -> "DistributionError":
        return cls("NETWORK_ERROR", f"Trust material fetch failed: {reason}")

    @classmethod
    def parse(cls, reason: str) -> "DistributionError":
        return cls("NETWORK_PARSE_ERROR", f"Trust material could not be parsed: {reason}")

    @classmethod
    def http_status(cls, status: int, url: str) -> "DistributionError":
        return cls("NETWORK_SERVER_ERROR", f"Trust backend returned HTTP {status} for {url}")


class PreconditionViolation(Exception):
    """Session misuse by the caller (programming error, not recoverable)."""
    pass
