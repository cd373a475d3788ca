from __future__ import annotations

from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field

from reqhive.tree import BodyKind, RequestMethod

FORMAT_VERSION = 1


class HeaderRecord(BaseModel):
    model_config = ConfigDict(extra="forbid")

    key: str
    val: str
    enabled: bool = True


# ── Storage records (one file per node) ───────────────────────────────────────

class RequestRecord(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    id: str
    kind: Literal["request"] = "request"
    name: str
    method: RequestMethod = RequestMethod.GET
    uri: str = ""
    headers: list[HeaderRecord] = Field(default_factory=list)
    body_kind: BodyKind = Field(default=BodyKind.NO_BODY, alias="bodyKind")
    body: str = ""


class DirectoryRecord(BaseModel):
    model_config = ConfigDict(extra="forbid")

    id: str
    kind: Literal["directory"] = "directory"
    name: str
    children: list[str] = Field(default_factory=list)


NodeRecord = Annotated[Union[RequestRecord, DirectoryRecord], Field(discriminator="kind")]


class CollectionManifest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    format: int = FORMAT_VERSION
    name: str
    description: str = ""
    root: str


# ── Export documents (whole collection in one file) ───────────────────────────

class JsonRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    name: str
    method: RequestMethod
    uri: str = ""
    headers: list[HeaderRecord] = Field(default_factory=list)
    body_kind: BodyKind = Field(default=BodyKind.NO_BODY, alias="bodyKind")
    body: str = ""


class JsonFolder(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str
    requests: list[Union[JsonRequest, JsonFolder]] = Field(default_factory=list)


class JsonCollectionInfo(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: str
    description: str = ""


class JsonCollection(BaseModel):
    model_config = ConfigDict(extra="forbid")

    info: JsonCollectionInfo
    requests: list[Union[JsonRequest, JsonFolder]] = Field(default_factory=list)


JsonFolder.model_rebuild()
JsonCollection.model_rebuild()
