import os
from typing import Dict

from pydantic import BaseModel, ConfigDict

DEFAULT_NAMESPACE = os.getenv("CDTOOL_NAMESPACE", "default")
DEFAULT_DOWNLOAD_IMAGE = os.getenv("CDTOOL_DOWNLOAD_IMAGE", "busybox:stable")
DEFAULT_BUILD_IMAGE = os.getenv("CDTOOL_BUILD_IMAGE", "ghcr.io/hujun-open/cdtool:latest")
DEFAULT_HTTP_PORT = int(os.getenv("CDTOOL_HTTP_PORT", "8899"))

# used by the HTTP control plane when it stages uploaded images
LISTEN_ADDR = os.getenv("CDTOOL_LISTEN_ADDR", "")
LISTEN_PORT = int(os.getenv("CDTOOL_LISTEN_PORT", str(DEFAULT_HTTP_PORT)))

POLL_INTERVAL_SECONDS = float(os.getenv("CDTOOL_POLL_INTERVAL_SECONDS", "1"))
POLL_RETRY_ATTEMPTS = int(os.getenv("CDTOOL_POLL_RETRY_ATTEMPTS", "3"))

S3_REGION = os.getenv("S3_REGION", "us-east-1")
PRESIGN_EXPIRY_SECONDS = int(os.getenv("CDTOOL_PRESIGN_EXPIRY_SECONDS", "3600"))


class OwnerLabel(BaseModel):
    """Label stamped on every job this tool creates and used to find them again."""

    model_config = ConfigDict(frozen=True)

    key: str
    value: str

    @property
    def selector(self) -> str:
        return f"{self.key}={self.value}"

    def as_dict(self) -> Dict[str, str]:
        return {self.key: self.value}


OWNER_LABEL = OwnerLabel(key="app.kubernetes.io/name", value="cdtool")
