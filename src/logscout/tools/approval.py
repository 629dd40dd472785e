"""Command approval policy and human confirmation requests."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Any

from loguru import logger

APPROVAL_TIMEOUT_MESSAGE = "Approval timeout"
USER_DENIED_MESSAGE = "Command denied by user"
NO_APPROVER_MESSAGE = "No approver is connected to confirm this command"


class ApprovalPolicy(StrEnum):
    """When a shell command needs a human decision before it runs."""

    SUGGEST = "suggest"
    AUTO_EDIT = "auto-edit"
    FULL_AUTO = "full-auto"

    @property
    def requires_confirmation(self) -> bool:
        return self is ApprovalPolicy.SUGGEST


class ReviewDecision(StrEnum):
    APPROVE = "approve"
    DENY = "deny"


@dataclass(frozen=True)
class CommandConfirmation:
    """Outcome of one approval request."""

    review: ReviewDecision
    custom_deny_message: str | None = None

    @property
    def approved(self) -> bool:
        return self.review is ReviewDecision.APPROVE

    @classmethod
    def approve(cls) -> CommandConfirmation:
        return cls(review=ReviewDecision.APPROVE)

    @classmethod
    def deny(cls, message: str = USER_DENIED_MESSAGE) -> CommandConfirmation:
        return cls(review=ReviewDecision.DENY, custom_deny_message=message)


PatchInfo = dict[str, Any]
Resolver = Callable[[CommandConfirmation], None]
ConfirmCallback = Callable[[list[str], PatchInfo | None], Awaitable[CommandConfirmation]]


class ApprovalRequest:
    """One pending decision, resolved at most once by whoever holds the resolver."""

    def __init__(self, command: list[str], patch_info: PatchInfo | None = None) -> None:
        self.command = list(command)
        self.patch_info = patch_info
        self._future: asyncio.Future[CommandConfirmation] = asyncio.get_running_loop().create_future()

    @property
    def done(self) -> bool:
        return self._future.done()

    def resolve(self, confirmation: CommandConfirmation) -> None:
        if self._future.done():
            logger.warning("approval.resolve.ignored command={}", " ".join(self.command))
            return
        self._future.set_result(confirmation)

    async def wait(self, timeout_seconds: float) -> CommandConfirmation:
        try:
            return await asyncio.wait_for(asyncio.shield(self._future), timeout=timeout_seconds)
        except TimeoutError:
            logger.warning("approval.timeout command={} timeout={}s", " ".join(self.command), timeout_seconds)
            self.resolve(CommandConfirmation.deny(APPROVAL_TIMEOUT_MESSAGE))
            return self._future.result()
