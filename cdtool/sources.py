import logging
from urllib.parse import urlparse

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from cdtool import config
from cdtool.errors import JobConfigError

logger = logging.getLogger(__name__)


def presign_s3_url(s3_uri: str, expires_in: int = config.PRESIGN_EXPIRY_SECONDS) -> str:
    """Turn s3://bucket/key into an HTTPS URL plain wget can download."""
    parsed = urlparse(s3_uri)
    bucket = parsed.netloc
    key = parsed.path.lstrip("/")
    if not bucket or not key:
        raise JobConfigError(f"invalid S3 uri {s3_uri!r}, expected s3://bucket/key")

    s3 = boto3.client("s3", region_name=config.S3_REGION)
    try:
        url = s3.generate_presigned_url(
            "get_object",
            Params={"Bucket": bucket, "Key": key},
            ExpiresIn=expires_in,
        )
    except (BotoCoreError, ClientError) as e:
        raise JobConfigError(f"failed to presign {s3_uri}: {e}") from e
    logger.info("presigned %s for %ds", s3_uri, expires_in)
    return url


def resolve_source_url(src: str) -> str:
    src = (src or "").strip()
    if not src:
        raise JobConfigError("src is not specified")
    if urlparse(src).scheme == "s3":
        return presign_s3_url(src)
    return src
