# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Human-friendly error message helpers for dbbackup.

These helpers centralize wording for common configuration and runtime
errors so that all modules present consistent, actionable messages.
"""


def explain_invalid_int_env(name: str, value: str | None) -> str:
    """
    Explain that an integer environment variable is invalid.
    """

    return (
        f"Invalid {name} value: {value!r}. "
        "It must be a non-negative integer."
    )


def explain_invalid_compression_level(value: object) -> str:
    """
    Explain that a compression level is out of range.
    """

    return (
        f"Invalid compression level: {value!r}. "
        "Expected an integer from 0 (store only) to 9 (smallest output)."
    )


def explain_invalid_engine(value: str | None) -> str:
    """
    Explain that the database type is not supported.
    """

    return (
        f"Unsupported database type: {value!r}. "
        "Expected one of: 'postgres', 'mysql', or 'mariadb'."
    )


def explain_unknown_cloud_scheme(uri: str, scheme: str) -> str:
    """
    Explain that a storage URI uses a scheme no backend handles.
    """

    return (
        f"Unknown storage scheme {scheme!r} in {uri!r}. "
        "Supported schemes: file, s3, minio, b2, azure, gs."
    )


def explain_missing_endpoint(provider: str) -> str:
    """
    Explain that an S3-compatible provider needs an explicit endpoint.
    """

    return (
        f"{provider} requires an endpoint. "
        f"Pass ?endpoint=https://host:port in the URI or set AWS_ENDPOINT_URL."
    )


def explain_missing_encryption_key() -> str:
    """
    Explain that encryption was requested without a key source.
    """

    return (
        "Encryption is enabled but no key was provided. "
        "Use --encryption-key-file, --encryption-key-env, or --encryption-key-passphrase, "
        "or set DBBACKUP_ENCRYPTION_KEY."
    )


def explain_invalid_key_length(length: int) -> str:
    """
    Explain that raw key material has the wrong size.
    """

    return (
        f"Encryption key decodes to {length} bytes. "
        "Raw keys must be exactly 32 bytes (or 32 bytes base64-encoded); "
        "use a passphrase for anything else."
    )


def explain_non_superuser_restore(user: str) -> str:
    """
    Explain what happens when a cluster restore runs without superuser rights.
    """

    return (
        f"User {user!r} is not a superuser. "
        "Object ownership will be reassigned to this user and privileges will not be restored."
    )


def explain_large_objects_sequential(databases: list) -> str:
    """
    Explain why parallel restore was reduced to one database at a time.
    """

    names = ", ".join(databases)
    return (
        f"Large objects detected in: {names}. "
        "Restoring databases one at a time so the lock table is not exhausted."
    )


def explain_target_database_missing(database: str) -> str:
    """
    Explain that a single-database restore target does not exist.
    """

    return (
        f"Target database {database!r} does not exist. "
        "Create it first or pass --create to let dbbackup create it."
    )


def explain_version_downgrade(source_major: int, target_major: int) -> str:
    """
    Explain the risk of restoring into an older major version.
    """

    return (
        f"Backup comes from major version {source_major} but the target runs {target_major}. "
        "Downgrades are not supported by the dump tools; objects using newer features may fail. "
        f"Take the dump with the version {target_major} client tools instead."
    )
