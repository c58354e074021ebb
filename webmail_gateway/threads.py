"""Conversation tree assembly.

Turns a flat batch of fetched messages into rooted reply trees, grouped by
thread key. The batch is any fetch window, so a parent that is missing from
it simply leaves its reply as a root.
"""

import logging
from collections import deque
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from webmail_gateway.identifiers import normalize
from webmail_gateway.models import Message, Thread, ThreadNode

logger = logging.getLogger(__name__)


def thread_key(message: Message) -> str:
    """Grouping key for a message.

    Provider thread token if present, else the oldest reference, else the
    parent identifier, else the message's own identifier.
    """
    if message.thread_id:
        return message.thread_id
    if message.references:
        return message.references[0]
    if message.parent_id:
        return message.parent_id
    return message.message_id


def _order_key(message: Message) -> Tuple:
    return (
        message.sort_date,
        message.message_id,
        message.subject,
        message.sender,
        message.parent_id or "",
        message.references,
        message.thread_id or "",
        message.uid or 0,
        message.body,
    )


def _find_cycles(parents: Sequence[Optional[int]]) -> Set[int]:
    """Return the indexes of every node that sits on a parent-link cycle.

    Each node has at most one parent, so following parent links from any
    node either ends at a root or enters exactly one cycle.
    """
    cyclic: Set[int] = set()
    settled: Set[int] = set()

    for start in range(len(parents)):
        path: List[int] = []
        position: Dict[int, int] = {}
        current: Optional[int] = start
        while (
            current is not None and current not in settled and current not in position
        ):
            position[current] = len(path)
            path.append(current)
            current = parents[current]

        if current is not None and current in position:
            cyclic.update(path[position[current] :])
        settled.update(path)

    return cyclic


def assemble(messages: Iterable[Message]) -> List[Thread]:
    """Assemble messages into conversation trees.

    Children are ordered by timestamp ascending, as are roots within a
    thread. The result does not depend on the input order. Messages whose
    parent links form a cycle are demoted to roots and marked
    ``cycle_broken``.

    Args:
        messages: Fetched messages; not mutated or retained

    Returns:
        One Thread per thread key, in order of each thread's earliest root
    """
    ordered = sorted(messages, key=_order_key)
    nodes = [ThreadNode(message=message) for message in ordered]

    index_by_id: Dict[str, int] = {}
    for index, message in enumerate(ordered):
        index_by_id.setdefault(message.message_id, index)

    parents: List[Optional[int]] = []
    for index, message in enumerate(ordered):
        parent = index_by_id.get(message.parent_id) if message.parent_id else None
        parents.append(parent)

    for index in sorted(_find_cycles(parents)):
        logger.debug(
            f"Breaking parent cycle at {ordered[index].message_id} "
            f"(parent {ordered[index].parent_id})"
        )
        parents[index] = None
        nodes[index].cycle_broken = True

    children: Dict[int, List[int]] = {}
    roots: List[int] = []
    for index, parent in enumerate(parents):
        if parent is None:
            roots.append(index)
        else:
            children.setdefault(parent, []).append(index)

    # Breadth-first from the roots; indexes ascend so children come out sorted
    visited: Set[int] = set(roots)
    queue = deque(roots)
    while queue:
        current = queue.popleft()
        for child in children.get(current, []):
            if child in visited:
                continue
            visited.add(child)
            nodes[current].children.append(nodes[child])
            queue.append(child)

    threads: Dict[str, Thread] = {}
    for index in roots:
        key = thread_key(ordered[index])
        thread = threads.get(key)
        if thread is None:
            thread = threads[key] = Thread(thread_key=key)
        thread.roots.append(nodes[index])

    return list(threads.values())


def assemble_thread(messages: Iterable[Message], thread_id: str) -> Thread:
    """Assemble the single conversation identified by ``thread_id``.

    Messages are selected by thread key, compared both verbatim (provider
    tokens) and as a normalized message identifier.
    """
    wanted = {thread_id, normalize(thread_id)}
    members = [message for message in messages if thread_key(message) in wanted]

    thread = Thread(thread_key=thread_id)
    for assembled in assemble(members):
        thread.roots.extend(assembled.roots)
    thread.roots.sort(key=lambda node: _order_key(node.message))
    return thread


def sort_by_activity(threads: Iterable[Thread]) -> List[Thread]:
    """Order threads most-recent-activity first."""
    return sorted(
        threads,
        key=lambda thread: (thread.last_activity, thread.thread_key),
        reverse=True,
    )
