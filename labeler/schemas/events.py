"""
Moderation Event Schema

Input for tools.ozone.moderation.emitEvent.

Only label events are accepted. A label event names the values to
create and the values to negate on one subject. Nothing here is
stored directly; each value becomes its own Label row.
"""

from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, StringConstraints


MOD_EVENT_LABEL = "tools.ozone.moderation.defs#modEventLabel"
REPO_REF = "com.atproto.admin.defs#repoRef"
STRONG_REF = "com.atproto.repo.strongRef"
STRONG_REF_MAIN = "com.atproto.repo.strongRef#main"

LabelValue = Annotated[str, StringConstraints(min_length=1, max_length=128)]


class ModEventLabel(BaseModel):
    """
    Payload of a label event.

    At least one of create_label_vals / negate_label_vals must be
    non-empty (checked by the write path, not here).
    """
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["tools.ozone.moderation.defs#modEventLabel"] = Field(
        default=MOD_EVENT_LABEL,
        alias="$type",
    )

    create_label_vals: list[LabelValue] = Field(
        default_factory=list,
        alias="createLabelVals",
        description="Label values to assert",
    )

    negate_label_vals: list[LabelValue] = Field(
        default_factory=list,
        alias="negateLabelVals",
        description="Label values to retract",
    )

    duration_in_hours: Optional[int] = Field(
        default=None,
        alias="durationInHours",
        gt=0,
        description="Created labels expire this many hours after creation",
    )

    comment: Optional[str] = None


class RepoRef(BaseModel):
    """An account, identified by its DID."""
    model_config = ConfigDict(populate_by_name=True)

    type: Literal["com.atproto.admin.defs#repoRef"] = Field(alias="$type")
    did: str = Field(..., min_length=1)

    @property
    def uri(self) -> str:
        return self.did

    @property
    def cid(self) -> Optional[str]:
        return None


class StrongRef(BaseModel):
    """A record, identified by URI and optionally pinned to a CID."""
    model_config = ConfigDict(populate_by_name=True)

    type: Literal[
        "com.atproto.repo.strongRef",
        "com.atproto.repo.strongRef#main",
    ] = Field(alias="$type")
    uri: str = Field(..., min_length=1)
    cid: Optional[str] = None


Subject = Union[RepoRef, StrongRef]


class ModEventView(BaseModel):
    """Response body for emitEvent."""
    model_config = ConfigDict(populate_by_name=True)

    id: int
    event: dict[str, Any]
    subject: dict[str, Any]
    subject_blob_cids: list[str] = Field(default_factory=list, alias="subjectBlobCids")
    created_by: str = Field(..., alias="createdBy")
    created_at: str = Field(..., alias="createdAt")
    labels: list[dict[str, Any]] = Field(default_factory=list)
