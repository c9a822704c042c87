from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from typing import Any, Mapping, Optional

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from common.frame import Frame

_LOG = logging.getLogger(__name__)

REQUIRED_ENV = ("AWS_ACCESS_KEY_ID", "AWS_SECRET_ACCESS_KEY", "AWS_REGION")


@dataclass
class ArchivalConfig:
    """Configuration for the S3 archival sink.

    Parameters
    ----------
    bucket:
        Destination bucket name.
    prefix:
        Fixed namespace prepended to every object key. Objects land at
        ``<prefix>/<key>`` where ``key`` already carries the date partition,
        e.g. ``motion-snapshots/07October2024/image_3.jpg``.
    content_type:
        MIME type stored with every object.
    max_attempts:
        Total attempts per upload, including botocore's internal retries.
    connect_timeout_s, read_timeout_s:
        Socket timeouts for the S3 client.
    """

    bucket: Optional[str] = None
    prefix: str = "motion-snapshots"
    content_type: str = "image/jpeg"
    max_attempts: int = 3
    connect_timeout_s: float = 5.0
    read_timeout_s: float = 30.0


@dataclass
class ArchivalReceipt:
    """Acknowledgement of a completed upload."""

    bucket: str
    key: str
    location: str
    etag: Optional[str] = None


class ArchivalError(Exception):
    """Upload failed: unreadable local file, network, auth, or service error."""


class ConfigurationError(Exception):
    """Missing credentials, region, or bucket. Fatal at startup."""


class S3ArchivalSink:
    """Upload motion frames to an S3 bucket.

    The sink only reads the local file; it never deletes it, so frames whose
    upload failed stay on disk next to the event ledger.
    """

    def __init__(
        self,
        config: ArchivalConfig,
        client: Any,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        if not config.bucket:
            raise ConfigurationError("No archival bucket configured")
        self._cfg = config
        self._client = client
        self._log = logger or _LOG

    @classmethod
    def from_env(
        cls,
        config: ArchivalConfig,
        environ: Optional[Mapping[str, str]] = None,
        client: Any = None,
    ) -> S3ArchivalSink:
        """Build a sink with credentials and region taken from the environment.

        Raises
        ------
        ConfigurationError
            If any of ``AWS_ACCESS_KEY_ID``, ``AWS_SECRET_ACCESS_KEY`` or
            ``AWS_REGION`` is unset, or no bucket is configured.
        """
        env = os.environ if environ is None else environ
        missing = [name for name in REQUIRED_ENV if not env.get(name)]
        if missing:
            raise ConfigurationError(
                "Missing required environment variables: " + ", ".join(missing)
            )
        if not config.bucket:
            raise ConfigurationError("No archival bucket configured")

        if client is None:
            client = boto3.client(
                "s3",
                region_name=env["AWS_REGION"],
                aws_access_key_id=env["AWS_ACCESS_KEY_ID"],
                aws_secret_access_key=env["AWS_SECRET_ACCESS_KEY"],
                aws_session_token=env.get("AWS_SESSION_TOKEN") or None,
                config=BotoConfig(
                    retries={
                        "total_max_attempts": int(config.max_attempts),
                        "mode": "standard",
                    },
                    connect_timeout=float(config.connect_timeout_s),
                    read_timeout=float(config.read_timeout_s),
                ),
            )
        return cls(config, client)

    @property
    def config(self) -> ArchivalConfig:
        return self._cfg

    def object_key(self, key: str) -> str:
        prefix = self._cfg.prefix.strip("/")
        key = key.lstrip("/")
        return f"{prefix}/{key}" if prefix else key

    def archive(self, frame: Frame, key: str) -> ArchivalReceipt:
        bucket = str(self._cfg.bucket)
        object_key = self.object_key(key)

        try:
            body = frame.path.read_bytes()
        except OSError as exc:
            raise ArchivalError(f"Cannot read {frame.path} for upload: {exc}") from exc

        try:
            resp = self._client.put_object(
                Bucket=bucket,
                Key=object_key,
                Body=body,
                ContentType=self._cfg.content_type,
            )
        except (ClientError, BotoCoreError) as exc:
            raise ArchivalError(
                f"Upload of {frame.path} to s3://{bucket}/{object_key} failed: {exc}"
            ) from exc

        etag = None
        if isinstance(resp, Mapping):
            etag = resp.get("ETag")

        receipt = ArchivalReceipt(
            bucket=bucket,
            key=object_key,
            location=f"s3://{bucket}/{object_key}",
            etag=etag,
        )
        self._log.info("File uploaded successfully. %s", receipt.location)
        return receipt
