"""Attribute code-repository events to work items.

Tiers are tried in order and the first hit wins:

1. explicit -- an issue reference in the message (``fixes #42``) whose issue
   number is synced to a work item in the same workspace.
2. branch -- a work-item id embedded in the branch name
   (``feat/c0123456789abcdefghijklmn-login``) that exists in the workspace.

There is no semantic tier; events that match neither stay unmapped.
"""
from __future__ import annotations

import logging
import re

from sqlalchemy import select
from sqlalchemy.orm import Session

from cadence.models import PROVIDER_GITHUB, IssueSync, WorkItem
from cadence.schemas import Attribution

log = logging.getLogger(__name__)

ISSUE_REF_RE = re.compile(r"(?:fix(?:es|ed)?|close[sd]?|resolve[sd]?|refs?)\s+#(\d+)", re.IGNORECASE)
BRANCH_ID_RE = re.compile(r"/?(c[a-z0-9]{24})(?:-|$)", re.IGNORECASE)

EXPLICIT_CONFIDENCE = 1.0
BRANCH_CONFIDENCE = 0.9


def extract_issue_numbers(message: str | None) -> list[int]:
    """Issue numbers referenced by closing/ref keywords, in order of appearance."""
    if not message:
        return []
    return [int(m.group(1)) for m in ISSUE_REF_RE.finditer(message)]


def extract_work_item_id(branch_name: str | None) -> str | None:
    if not branch_name:
        return None
    match = BRANCH_ID_RE.search(branch_name)
    return match.group(1) if match else None


class ActivityAttributionResolver:
    def __init__(self, session: Session, provider: str = PROVIDER_GITHUB) -> None:
        self.session = session
        self.provider = provider

    def lookup_work_item_by_external_issue(self, issue_number: int, workspace_id: str | None = None) -> str | None:
        query = select(IssueSync.work_item_id).where(
            IssueSync.provider == self.provider,
            IssueSync.external_id == str(issue_number),
        )
        if workspace_id is not None:
            # Issue numbers repeat across repositories; never attribute across workspaces
            query = query.join(WorkItem, WorkItem.id == IssueSync.work_item_id).where(
                WorkItem.workspace_id == workspace_id
            )
        return self.session.execute(query).scalars().first()

    def _work_item_in_workspace(self, work_item_id: str, workspace_id: str) -> str | None:
        return self.session.execute(
            select(WorkItem.id).where(WorkItem.id == work_item_id, WorkItem.workspace_id == workspace_id)
        ).scalars().first()

    def resolve(self, branch_name: str | None, message: str | None, workspace_id: str) -> Attribution | None:
        for issue_number in extract_issue_numbers(message):
            work_item_id = self.lookup_work_item_by_external_issue(issue_number, workspace_id)
            if work_item_id:
                return Attribution(work_item_id=work_item_id, method="explicit", confidence=EXPLICIT_CONFIDENCE)

        candidate = extract_work_item_id(branch_name)
        if candidate:
            # ids are generated lowercase; branch names are not always
            work_item_id = self._work_item_in_workspace(candidate.lower(), workspace_id)
            if work_item_id:
                return Attribution(work_item_id=work_item_id, method="branch", confidence=BRANCH_CONFIDENCE)
            log.debug("Branch %s names unknown work item %s in workspace %s", branch_name, candidate, workspace_id)

        return None
