"""Pydantic response models for the Authentik API endpoints used by the retriever."""
from __future__ import annotations

from typing import Generic, List, Optional, TypeVar, Union

from pydantic import BaseModel, ConfigDict

# Users and providers use integer primary keys, everything else uses UUIDs
PrimaryKey = Union[int, str]

T = TypeVar("T")


class AuthentikModel(BaseModel):
    model_config = ConfigDict(extra="allow")


class ListResult(AuthentikModel, Generic[T]):
    results: List[T] = []


class User(AuthentikModel):
    pk: PrimaryKey
    username: str
    type: Optional[str] = None


class Flow(AuthentikModel):
    pk: PrimaryKey
    slug: str
    name: Optional[str] = None
    designation: Optional[str] = None


class Stage(AuthentikModel):
    pk: PrimaryKey
    name: str


class FlowBinding(AuthentikModel):
    pk: PrimaryKey
    target: PrimaryKey
    stage: PrimaryKey
    order: int = 0


class LdapProvider(AuthentikModel):
    pk: PrimaryKey
    name: str
    base_dn: Optional[str] = None
    search_group: Optional[PrimaryKey] = None


class Application(AuthentikModel):
    pk: PrimaryKey
    slug: str
    name: Optional[str] = None
    provider: Optional[PrimaryKey] = None


class Outpost(AuthentikModel):
    pk: PrimaryKey
    name: str
    type: Optional[str] = None
    providers: List[PrimaryKey] = []
    token_identifier: Optional[str] = None


class TokenViewKey(AuthentikModel):
    key: Optional[str] = None
