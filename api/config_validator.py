"""
Configuration validation for the OpenStack console API
Checks the environment on startup
"""
import os
import sys
from typing import List, Tuple


class ConfigValidator:
    """Validates environment configuration on startup"""

    REQUIRED_VARS = {
        "OS_AUTH_URL": "Keystone v3 URL",
    }

    # Optional with defaults
    OPTIONAL_VARS = {
        "OS_USERNAME": ("", "OpenStack username used for implicit sign-in"),
        "OS_PASSWORD": ("", "OpenStack password used for implicit sign-in"),
        "OS_PROJECT_NAME": ("admin", "OpenStack project name"),
        "OS_USER_DOMAIN": ("Default", "OpenStack user domain"),
        "OS_PROJECT_DOMAIN": ("Default", "OpenStack project domain"),
        "OS_REQUEST_TIMEOUT": ("15", "Upstream request timeout (seconds)"),
        "OS_AUTH_TIMEOUT": ("10", "Keystone request timeout (seconds)"),
        "OS_TOKEN_SKEW_SECONDS": ("120", "Refresh tokens this close to expiry"),
    }

    URL_VARS = ("OS_AUTH_URL", "OS_NETWORK_URL", "OS_IMAGE_URL", "OS_COMPUTE_URL")

    @classmethod
    def validate(cls) -> Tuple[bool, List[str], List[str]]:
        """
        Validate configuration
        Returns: (is_valid, errors, warnings)
        """
        errors = []
        warnings = []

        for var, description in cls.REQUIRED_VARS.items():
            value = os.getenv(var)
            if not value or value.strip() == "":
                errors.append(f"Missing required env var: {var} ({description})")

        for var, (default, description) in cls.OPTIONAL_VARS.items():
            value = os.getenv(var)
            if not value or value.strip() == "":
                shown = default if default else "<unset>"
                warnings.append(f"Using default for {var}={shown} ({description})")

        if bool(os.getenv("OS_USERNAME")) != bool(os.getenv("OS_PASSWORD")):
            warnings.append("Only one of OS_USERNAME/OS_PASSWORD is set; implicit sign-in is disabled")

        errors.extend(cls._validate_values())

        return len(errors) == 0, errors, warnings

    @classmethod
    def _validate_values(cls) -> List[str]:
        errors = []

        for var in ("OS_REQUEST_TIMEOUT", "OS_AUTH_TIMEOUT"):
            value = os.getenv(var, "10")
            try:
                if float(value) <= 0:
                    errors.append(f"{var} must be positive")
            except ValueError:
                errors.append(f"{var} must be a number: {value}")

        skew = os.getenv("OS_TOKEN_SKEW_SECONDS", "120")
        try:
            if int(skew) < 0:
                errors.append("OS_TOKEN_SKEW_SECONDS must not be negative")
        except ValueError:
            errors.append(f"OS_TOKEN_SKEW_SECONDS must be a number: {skew}")

        for var in cls.URL_VARS:
            url = os.getenv(var, "")
            if url and not (url.startswith("http://") or url.startswith("https://")):
                errors.append(f"{var} must start with http:// or https://")

        return errors

    @classmethod
    def print_validation_results(cls, is_valid: bool, errors: List[str], warnings: List[str]) -> bool:
        print("\n" + "=" * 70)
        print("Configuration Validation Results")
        print("=" * 70)

        if warnings:
            print("\nWARNINGS:")
            for warning in warnings:
                print(f"  - {warning}")

        if errors:
            print("\nERRORS:")
            for error in errors:
                print(f"  - {error}")
            print("\nConfiguration validation FAILED")
        else:
            print("\nConfiguration validation PASSED")
        print("=" * 70 + "\n")

        return is_valid

    @classmethod
    def validate_and_exit_on_error(cls) -> None:
        """Validate configuration and exit if errors found"""
        is_valid, errors, warnings = cls.validate()
        cls.print_validation_results(is_valid, errors, warnings)

        if not is_valid:
            print("Fix configuration errors before starting the service.", file=sys.stderr)
            sys.exit(1)
