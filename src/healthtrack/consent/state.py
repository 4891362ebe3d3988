"""Consent state model."""

from __future__ import annotations

from pydantic import BaseModel
from pydantic import ConfigDict


class ConsentState(BaseModel):
    """Two-category consent: analytics and marketing."""

    model_config = ConfigDict(frozen=True)

    analytics: bool = True
    marketing: bool = True

    @property
    def any_granted(self) -> bool:
        return self.analytics or self.marketing


GRANTED = ConsentState(analytics=True, marketing=True)
DENIED = ConsentState(analytics=False, marketing=False)
