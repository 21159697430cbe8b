"""Offline dependency repair.

Dependencies written by hand or by an agent drift from the names they point
at ("Setup Db" for a task called "Setup DB", a truncated title, ...). This
module proposes fixes using loose matching; nothing here is consulted when
deciding whether a task is eligible. Proposals are reviewed, then applied
explicitly with :func:`apply_dependency_fixes`.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from difflib import SequenceMatcher

from .deps import find_dependency
from .models import TaskRecord, TaskStatus, slugify
from .store import Snapshot, TaskStore

logger = logging.getLogger(__name__)

_IGNORED = (TaskStatus.CANCELLED, TaskStatus.SPLIT)


@dataclass
class DependencyFix:
    task_id: str
    task_name: str
    old: str
    new: str | None
    target_id: str | None
    score: float
    reason: str

    def to_dict(self) -> dict:
        return asdict(self)


def _score(ref: str, candidate: TaskRecord) -> tuple[float, str]:
    ref_slug = slugify(ref)
    if not ref_slug:
        return 0.0, ""
    if ref_slug == candidate.slug:
        return 1.0, "same slug after normalisation"
    if ref_slug in candidate.slug or candidate.slug in ref_slug:
        return 0.9, "substring of slug"
    ratio = SequenceMatcher(None, ref_slug, candidate.slug).ratio()
    return ratio, f"similar name ({ratio:.2f})"


def _best_match(
    ref: str, candidates: list[TaskRecord], cutoff: float
) -> tuple[TaskRecord | None, float, str]:
    scored = []
    for cand in candidates:
        score, reason = _score(ref, cand)
        if score >= cutoff:
            scored.append((score, cand, reason))
    if not scored:
        return None, 0.0, "no similar task"
    scored.sort(key=lambda s: -s[0])
    top_score = scored[0][0]
    top = [s for s in scored if s[0] == top_score]
    if len(top) > 1:
        names = ", ".join(sorted(s[1].name for s in top))
        return None, top_score, f"ambiguous: {names}"
    return top[0][1], top_score, top[0][2]


def propose_dependency_fixes(snap: Snapshot, cutoff: float = 0.75) -> list[DependencyFix]:
    """List every dependency that names no task, with a proposed replacement."""
    live = [t for t in snap.tasks if t.status not in _IGNORED]
    fixes: list[DependencyFix] = []
    for task in live:
        for ref in task.dependencies:
            if find_dependency(ref, snap.tasks) is not None:
                continue
            others = [t for t in live if t.id != task.id]
            target, score, reason = _best_match(ref, others, cutoff)
            fixes.append(DependencyFix(
                task_id=task.id,
                task_name=task.name,
                old=ref,
                new=target.name if target else None,
                target_id=target.id if target else None,
                score=round(score, 3),
                reason=reason,
            ))
    return fixes


def apply_dependency_fixes(store: TaskStore, fixes: list[DependencyFix]) -> list[TaskRecord]:
    """Rewrite the dependency references of every fix that has a replacement."""
    by_task: dict[str, dict[str, str]] = {}
    for fix in fixes:
        if fix.new:
            by_task.setdefault(fix.task_id, {})[fix.old] = fix.new

    updated = []
    for task_id, replacements in by_task.items():
        def mutate(task: TaskRecord, replacements=replacements) -> None:
            task.dependencies = [replacements.get(d, d) for d in task.dependencies]

        updated.append(store.update(task_id, mutate))
        logger.info("Repaired %d dependency reference(s) on %s", len(replacements), task_id)
    return updated
