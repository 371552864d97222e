"""
Closed result type for checks that decide whether work may go ahead.

Proceed means continue, Wait means stop for now and come back on the next
pass, Fail means stop for good.
"""
from dataclasses import dataclass
from typing import Optional, Union


@dataclass(frozen=True)
class Proceed:
    pass


@dataclass(frozen=True)
class Wait:
    reason: str = ""
    # Operation phase observed while deciding to wait, if any
    phase: Optional[str] = None


@dataclass(frozen=True)
class Fail:
    reason: str


Outcome = Union[Proceed, Wait, Fail]
