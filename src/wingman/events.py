"""Typed comment events consumed by the handler."""

from __future__ import annotations

from typing import Any, Mapping, Optional

from pydantic import BaseModel, ConfigDict, ValidationError


class EventError(ValueError):
    """Raised when an incoming payload does not describe a comment event."""


class CommentEvent(BaseModel):
    """A newly created comment on an issue or pull request."""

    model_config = ConfigDict(frozen=True)

    owner: str
    repo: str
    number: int
    author: str
    body: str = ""
    is_pull_request: bool = False
    head_ref: Optional[str] = None
    clone_url: Optional[str] = None

    @property
    def full_name(self) -> str:
        return f"{self.owner}/{self.repo}"

    @classmethod
    def from_webhook(cls, payload: Mapping[str, Any]) -> "CommentEvent":
        """Build an event from a GitHub ``issue_comment`` webhook payload."""

        try:
            issue = payload["issue"]
            comment = payload["comment"]
            repository = payload["repository"]
            return cls(
                owner=repository["owner"]["login"],
                repo=repository["name"],
                number=issue["number"],
                author=(comment.get("user") or {}).get("login", ""),
                body=comment.get("body") or "",
                is_pull_request=bool(issue.get("pull_request")),
                clone_url=repository.get("clone_url"),
            )
        except (KeyError, TypeError, AttributeError) as error:
            raise EventError(f"Payload is not an issue_comment event: missing {error}") from error
        except ValidationError as error:
            raise EventError(f"Payload is not an issue_comment event: {error}") from error


__all__ = ["CommentEvent", "EventError"]
