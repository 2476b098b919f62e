from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, field_validator

from cdtool import config

TIME_FORMAT = "%Y-%m-%d %H:%M:%S"


class JobRequest(BaseModel):
    source_url: str
    tag: str
    namespace: str = config.DEFAULT_NAMESPACE
    download_image: str = config.DEFAULT_DOWNLOAD_IMAGE
    build_image: str = config.DEFAULT_BUILD_IMAGE

    @field_validator("source_url", "tag", "namespace", "download_image", "build_image")
    @classmethod
    def _not_blank(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("value must not be blank")
        return value


class JobRow(BaseModel):
    """What the inspection commands show for one job."""

    namespace: str
    name: str
    source: str = ""
    tag: str = ""
    failed: int = 0
    succeeded: bool = False
    completion_time: Optional[datetime] = None

    @property
    def qualified_name(self) -> str:
        return f"{self.namespace}/{self.name}"

    @property
    def completion_label(self) -> str:
        if self.completion_time is None:
            return "n/a"
        return self.completion_time.strftime(TIME_FORMAT)


class PollState(str, Enum):
    RUNNING = "running"
    FAILED_RUNNING = "failed_running"  # pod failures seen, job not finished
    SUCCEEDED = "succeeded"
    ABORTED = "aborted"


class UploadResult(BaseModel):
    job_name: str
    namespace: str
    source_url: str
    state: Optional[PollState] = None
