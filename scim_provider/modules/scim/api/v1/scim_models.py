from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from scim_provider.modules.scim.domain.pagination import Page
from scim_provider.modules.scim.domain.patch import PATCH_OP_SCHEMA, PatchOperation

SCIM_LIST_SCHEMA = "urn:ietf:params:scim:api:messages:2.0:ListResponse"
SCIM_SERVICE_PROVIDER_CONFIG_SCHEMA = (
    "urn:ietf:params:scim:schemas:core:2.0:ServiceProviderConfig"
)


class ScimListResponse(BaseModel):
    schemas: list[str] = Field(default_factory=lambda: [SCIM_LIST_SCHEMA])
    totalResults: int
    startIndex: int
    itemsPerPage: int
    Resources: list[dict[str, Any]]

    model_config = ConfigDict(extra="forbid")

    @classmethod
    def from_page(cls, page: Page) -> ScimListResponse:
        return cls(
            totalResults=page.total_results,
            startIndex=page.start_index,
            itemsPerPage=page.items_per_page,
            Resources=page.resources,
        )


class ScimPatchOperation(BaseModel):
    # Case-insensitive; Azure AD sends "Replace"/"Add".
    op: str = Field(min_length=1)
    path: str | None = None
    value: Any | None = None

    model_config = ConfigDict(extra="ignore")

    def to_operation(self) -> PatchOperation:
        return PatchOperation(op=self.op, path=self.path, value=self.value)


class ScimPatchRequest(BaseModel):
    schemas: list[str] = Field(default_factory=lambda: [PATCH_OP_SCHEMA])
    Operations: list[ScimPatchOperation] = Field(default_factory=list)

    model_config = ConfigDict(extra="ignore")

    def operations(self) -> list[PatchOperation]:
        return [operation.to_operation() for operation in self.Operations]
