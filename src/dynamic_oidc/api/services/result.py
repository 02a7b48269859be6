from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, Optional, TypeVar, Union

from dynamic_oidc.api.services.errors import OidcErrorCode

T = TypeVar("T")


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T


@dataclass(frozen=True)
class Err:
    code: OidcErrorCode
    detail: Optional[str] = None
    return_url: Optional[str] = None


Result = Union[Ok[T], Err]
