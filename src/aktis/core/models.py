from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from .errors import DataQualityWarning

# Count value meaning "count fetch failed", distinct from a real zero
COUNT_UNKNOWN = -1


class BrowserCookie(BaseModel):
    """Cookie as captured by the browser extension."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    name: str = Field(validation_alias=AliasChoices("name", "Name"))
    value: str = Field(validation_alias=AliasChoices("value", "Value"))
    domain: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("domain", "Domain")
    )
    path: Optional[str] = Field(
        default="/", validation_alias=AliasChoices("path", "Path")
    )
    expiration_date: Optional[float] = Field(
        default=None,
        alias="expirationDate",
        validation_alias=AliasChoices("expirationDate", "expires"),
    )
    secure: bool = Field(default=False, validation_alias=AliasChoices("secure", "Secure"))
    http_only: bool = Field(
        default=False,
        alias="httpOnly",
        validation_alias=AliasChoices("httpOnly", "HttpOnly"),
    )
    same_site: Optional[str] = Field(
        default=None,
        alias="sameSite",
        validation_alias=AliasChoices("sameSite", "SameSite"),
    )


class CredentialBundle(BaseModel):
    """Browser-derived session: cookies, tokens, user agent and origin."""

    model_config = ConfigDict(extra="allow", populate_by_name=True)

    base_url: str = Field(default="", alias="baseUrl")
    user_agent: str = Field(default="", alias="userAgent")
    cookies: list[BrowserCookie] = []
    tokens: dict[str, Any] = {}
    timestamp: Optional[int] = None

    @property
    def cloud_id(self) -> Optional[str]:
        value = self.tokens.get("cloudId")
        return value if isinstance(value, str) else None

    @property
    def atl_token(self) -> Optional[str]:
        value = self.tokens.get("atlToken")
        return value if isinstance(value, str) else None

    def to_record(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class ContainerRecord(BaseModel):
    """Project or space with its derived child count."""

    key: str
    name: Optional[str] = None
    id: Optional[str] = None
    count: int = COUNT_UNKNOWN
    payload: dict[str, Any] = {}

    @classmethod
    def from_payload(cls, payload: dict[str, Any]) -> "ContainerRecord":
        remote_id = payload.get("id")
        return cls(
            key=str(payload["key"]),
            name=payload.get("name"),
            id=str(remote_id) if remote_id is not None else None,
            payload=payload,
        )

    @classmethod
    def from_record(cls, record: dict[str, Any], count_field: str) -> "ContainerRecord":
        payload = dict(record)
        count = payload.pop(count_field, COUNT_UNKNOWN)
        container = cls.from_payload(payload)
        container.count = count if isinstance(count, int) else COUNT_UNKNOWN
        return container

    def to_record(self, count_field: str) -> dict[str, Any]:
        return {**self.payload, count_field: self.count}


class ChildItem(BaseModel):
    """Issue or page envelope; the payload is passed through verbatim."""

    key: str
    container_key: str  # container this item was fetched for
    embedded_container_key: Optional[str] = None  # what the payload claims
    payload: dict[str, Any] = {}

    @property
    def misrouted(self) -> bool:
        return (
            self.embedded_container_key is not None
            and self.embedded_container_key != self.container_key
        )

    def to_record(self) -> dict[str, Any]:
        return {**self.payload, "containerKey": self.container_key}


class FetchResult(BaseModel):
    """Outcome of one container's item pagination."""

    container_key: str
    stored: int = 0
    duplicates: int = 0
    misrouted: int = 0
    requests: int = 0
    stop_reason: Optional[str] = None
    warnings: list[DataQualityWarning] = []


class SyncResult(BaseModel):
    """Outcome of one index synchronization."""

    stored: int = 0
    failed_counts: list[str] = []
