from __future__ import annotations

from pydantic import BaseModel, Field

from .topology import IngressPolicy


class DeployRequest(BaseModel):
    name: str = Field(..., description="Unit name (dns-safe)")
    project: str = Field(..., description="Project scope of the registry and identity")
    region: str = Field(..., description="Region the unit runs in")
    version: str = Field("latest", description="Tag or digest for the api and web images")
    ingress: IngressPolicy = Field(IngressPolicy.ALL, description="Which traffic classes are admitted")
    min_instances: int = Field(0, ge=0, le=100)
    max_instances: int = Field(10, ge=1, le=100)
    public: bool = Field(True, description="Grant anonymous invocation")


class RedeployRequest(BaseModel):
    version: str
    public: bool | None = Field(None, description="Change the anonymous invocation grant; keep it when omitted")


class ScaleRequest(BaseModel):
    instances: int = Field(..., ge=0, le=100)
