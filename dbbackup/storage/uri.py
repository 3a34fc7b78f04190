# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Cloud storage URI parsing.

Supported forms:
    - s3://bucket/path/file.dump
    - s3://bucket.s3.us-west-2.amazonaws.com/path/file.dump
    - s3://minio.local:9000/bucket/path (host with dots becomes the endpoint)
    - minio://bucket/path?endpoint=http://localhost:9000
    - b2://bucket/path?endpoint=https://s3.us-west-002.backblazeb2.com
    - azure://container/path
    - gs://bucket/path
    - file:///var/backups
"""

import posixpath
from dataclasses import dataclass
from enum import Enum
from urllib.parse import parse_qs, urlparse

from dbbackup.errors import explain_unknown_cloud_scheme
from dbbackup.exceptions import ConfigurationError


class Provider(str, Enum):
    """Object storage backend family."""

    LOCAL = "local"
    S3 = "s3"
    MINIO = "minio"
    B2 = "b2"
    AZURE = "azure"
    GCS = "gcs"

    @property
    def is_s3_compatible(self) -> bool:
        return self in (Provider.S3, Provider.MINIO, Provider.B2)


_SCHEMES = {
    "file": Provider.LOCAL,
    "local": Provider.LOCAL,
    "s3": Provider.S3,
    "aws": Provider.S3,
    "minio": Provider.MINIO,
    "b2": Provider.B2,
    "azure": Provider.AZURE,
    "azblob": Provider.AZURE,
    "gs": Provider.GCS,
    "gcs": Provider.GCS,
    "google": Provider.GCS,
}


@dataclass(frozen=True)
class CloudURI:
    """A parsed storage URI."""

    provider: Provider
    bucket: str
    path: str  # Path inside the bucket, no leading slash
    region: str | None = None
    endpoint: str | None = None
    path_style: bool = False
    raw: str = ""

    @property
    def base_name(self) -> str:
        return posixpath.basename(self.path)

    @property
    def dir(self) -> str:
        parent = posixpath.dirname(self.path)
        return "" if parent == "." else parent

    def join(self, name: str) -> str:
        """Full URI of an object named `name` under this URI's path."""
        key = posixpath.join(self.path, name) if self.path else name
        if self.provider == Provider.LOCAL:
            return f"file://{posixpath.join(self.bucket or '/', key)}"
        return f"{self.provider.value}://{self.bucket}/{key}"

    def parent(self) -> "CloudURI":
        """The URI of the directory that holds this object."""
        return CloudURI(
            provider=self.provider,
            bucket=self.bucket,
            path=self.dir,
            region=self.region,
            endpoint=self.endpoint,
            path_style=self.path_style,
            raw=self.raw,
        )

    def __str__(self) -> str:
        return self.raw or self.join("")


def is_cloud_uri(value: str) -> bool:
    """True when the value has a known storage scheme."""
    scheme, sep, _ = value.partition("://")
    return bool(sep) and scheme.lower() in _SCHEMES


def parse_cloud_uri(uri: str) -> CloudURI:
    """
    Parse a storage URI.

    Args:
        uri: URI of the form scheme://bucket/path[?param=value]

    Returns:
        CloudURI

    Raises:
        ConfigurationError: On empty input, unknown scheme, or missing bucket
    """
    if not uri:
        raise ConfigurationError("Storage URI cannot be empty")

    parsed = urlparse(uri)
    scheme = parsed.scheme.lower()
    if not scheme:
        raise ConfigurationError(
            "Storage URI must have a scheme (e.g., s3://)",
            details={"uri": uri},
        )

    provider = _SCHEMES.get(scheme)
    if provider is None:
        raise ConfigurationError(explain_unknown_cloud_scheme(uri, scheme))

    params = {key: values[-1] for key, values in parse_qs(parsed.query).items()}
    region = params.get("region")
    endpoint = params.get("endpoint")
    path_style = params.get("path_style", "").lower() in ("1", "true", "yes")

    if provider == Provider.LOCAL:
        # file:///abs/path or file://relative/path
        local_path = (parsed.netloc + parsed.path) if parsed.netloc else parsed.path
        return CloudURI(
            provider=provider,
            bucket="",
            path=local_path,
            raw=uri,
        )

    bucket = parsed.netloc
    path = parsed.path
    if not bucket:
        raise ConfigurationError(
            "Storage URI must specify a bucket (e.g., s3://bucket/path)",
            details={"uri": uri},
        )

    # bucket.s3.region.amazonaws.com or bucket.s3-region.amazonaws.com
    if ".amazonaws.com" in bucket:
        parts = bucket.split(".")
        bucket = parts[0]
        for i, part in enumerate(parts):
            if part == "s3" and i + 1 < len(parts) and parts[i + 1] != "amazonaws":
                region = region or parts[i + 1]
                break
            if part.startswith("s3-"):
                region = region or part[len("s3-"):]
                break

    # Custom endpoint host: the bucket is the first path segment
    elif provider in (Provider.MINIO, Provider.S3) and ("." in bucket or ":" in bucket):
        endpoint = endpoint or f"http://{bucket}"
        segments = path.lstrip("/").split("/", 1)
        if segments[0]:
            bucket = segments[0]
            path = segments[1] if len(segments) > 1 else ""
        path_style = True

    if provider in (Provider.MINIO, Provider.B2):
        path_style = True

    return CloudURI(
        provider=provider,
        bucket=bucket,
        path=path.strip("/"),
        region=region,
        endpoint=endpoint,
        path_style=path_style,
        raw=uri,
    )
