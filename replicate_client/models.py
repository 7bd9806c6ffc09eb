import re
from datetime import datetime
from enum import Enum
from typing import Any, Generic, Optional, TypeVar
from urllib.parse import parse_qs, urlsplit

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from replicate_client.value import Value

InputT = TypeVar("InputT")
OutputT = TypeVar("OutputT")
ResultT = TypeVar("ResultT")

_EXCESS_FRACTION = re.compile(r"(\.\d{6})\d+")


def normalize_timestamp(value: Any) -> Any:
    """Truncate fractional seconds beyond microsecond precision so ISO 8601 parsing accepts them"""
    if isinstance(value, str):
        return _EXCESS_FRACTION.sub(r"\1", value, count=1)
    return value


def cursor_from_url(value: Any) -> Optional[str]:
    """Extract the `cursor` query parameter from a pagination URL"""
    if not isinstance(value, str) or not value:
        return None
    cursors = parse_qs(urlsplit(value).query).get("cursor")
    return cursors[0] if cursors else None


class Status(str, Enum):
    starting = "starting"
    processing = "processing"
    succeeded = "succeeded"
    failed = "failed"
    canceled = "canceled"

    @property
    def terminated(self) -> bool:
        return self not in (Status.starting, Status.processing)


class Source(str, Enum):
    web = "web"
    api = "api"


class Metrics(BaseModel):
    model_config = ConfigDict(frozen=True, extra="allow")

    predict_time: Optional[float] = None


class JobError(BaseModel):
    """An error reported by the API, either as `{"detail": ...}` or as a bare string"""

    model_config = ConfigDict(frozen=True)

    detail: str

    @model_validator(mode="before")
    @classmethod
    def _wrap_string(cls, data: Any) -> Any:
        if isinstance(data, str):
            return {"detail": data}
        return data

    def __str__(self) -> str:
        return self.detail


class Job(BaseModel, Generic[InputT]):
    """
    State of a submitted job.

    Records are immutable values: polling replaces the whole record with a
    freshly fetched one rather than mutating fields in place.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    id: str
    version: Optional[str] = None
    source: Optional[Source] = None
    input: InputT
    status: Status
    error: Optional[JobError] = None
    logs: Optional[str] = None
    metrics: Optional[Metrics] = None
    created_at: datetime
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    urls: dict[str, str] = Field(default_factory=dict)

    @field_validator("created_at", "started_at", "completed_at", mode="before")
    @classmethod
    def _parse_timestamp(cls, value: Any) -> Any:
        return normalize_timestamp(value)

    @property
    def terminated(self) -> bool:
        return self.status.terminated


class Prediction(Job[InputT], Generic[InputT, OutputT]):
    model: Optional[str] = None
    output: Optional[OutputT] = None


class TrainingOutput(BaseModel):
    model_config = ConfigDict(frozen=True)

    version: str
    weights: Optional[str] = None


class Training(Job[InputT], Generic[InputT]):
    output: Optional[TrainingOutput] = None


AnyPrediction = Prediction[Value, Value]
AnyTraining = Training[Value]


class Page(BaseModel, Generic[ResultT]):
    """A page of results; `previous` and `next` hold cursors, not URLs"""

    previous: Optional[str] = None
    next: Optional[str] = None
    results: list[ResultT]

    @field_validator("previous", "next", mode="before")
    @classmethod
    def _extract_cursor(cls, value: Any) -> Optional[str]:
        return cursor_from_url(value)


class WebhookEvent(str, Enum):
    start = "start"
    output = "output"
    logs = "logs"
    completed = "completed"


class Webhook(BaseModel):
    """An HTTP endpoint the API POSTs the job record to on the selected events"""

    url: str
    events: list[WebhookEvent] = Field(default_factory=lambda: list(WebhookEvent))


class Identifier(BaseModel):
    """A model reference in the form `{owner}/{name}` or `{owner}/{name}:{version}`"""

    model_config = ConfigDict(frozen=True)

    owner: str
    name: str
    version: Optional[str] = None

    @classmethod
    def parse(cls, raw: str) -> "Identifier":
        owner, slash, rest = raw.partition("/")
        if not slash or not owner or not rest or "/" in rest:
            raise ValueError(f"Invalid identifier: {raw!r}")

        name, colon, version = rest.partition(":")
        if not name or (colon and not version):
            raise ValueError(f"Invalid identifier: {raw!r}")

        return cls(owner=owner, name=name, version=version or None)

    @property
    def model_id(self) -> str:
        return f"{self.owner}/{self.name}"

    def __str__(self) -> str:
        if self.version is None:
            return self.model_id
        return f"{self.model_id}:{self.version}"


class AccountType(str, Enum):
    user = "user"
    organization = "organization"


class Account(BaseModel):
    type: AccountType
    username: str
    name: str
    github_url: Optional[str] = None


class Hardware(BaseModel):
    sku: str
    name: str


class Visibility(str, Enum):
    public = "public"
    private = "private"


class ModelVersion(BaseModel):
    id: str
    created_at: datetime
    openapi_schema: Optional[Value] = None

    @field_validator("created_at", mode="before")
    @classmethod
    def _parse_timestamp(cls, value: Any) -> Any:
        return normalize_timestamp(value)


class Model(BaseModel):
    owner: str
    name: str
    url: Optional[str] = None
    github_url: Optional[str] = None
    paper_url: Optional[str] = None
    license_url: Optional[str] = None
    description: Optional[str] = None
    visibility: Visibility = Visibility.public
    latest_version: Optional[ModelVersion] = None

    @property
    def id(self) -> str:
        return f"{self.owner}/{self.name}"


class ModelCollection(BaseModel):
    name: str
    slug: str
    description: Optional[str] = None
    models: list[Model] = Field(default_factory=list)
