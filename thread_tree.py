"""
Nest a reconciled ledger into a comment tree for export.

Sort modes: top, bottom, new, old.
Filter modes: all, removed_deleted, removed, deleted. A filtered tree keeps a
comment when it matches or when any of its replies do, so context survives.
"""

from typing import Any, Dict, List, Mapping, Optional

from comment_ledger import CommentRecord

SORTS = ("top", "bottom", "new", "old")
FILTERS = ("all", "removed_deleted", "removed", "deleted")


def _created(node):
    # placeholders have no creation time; keep them after dated comments
    created = node["created_utc"]
    return (created is None, created or 0)


def _sort_key(sort: str):
    if sort == "top":
        return lambda n: (-n["score"], _created(n))
    if sort == "bottom":
        return lambda n: (n["score"], _created(n))
    if sort == "new":
        return lambda n: (n["created_utc"] is None, -(n["created_utc"] or 0))
    return _created


def _matches(node: Dict[str, Any], comment_filter: str) -> bool:
    if comment_filter == "removed":
        return node["removed"]
    if comment_filter == "deleted":
        return node["deleted"]
    if comment_filter == "removed_deleted":
        return node["removed"] or node["deleted"]
    return True


def _node(comment_id: str, record: Optional[CommentRecord]) -> Dict[str, Any]:
    if record is None:
        return {
            "comment_id": comment_id,
            "unavailable": True,
            "author": None,
            "body": None,
            "score": 0,
            "created_utc": None,
            "removed": False,
            "deleted": False,
            "replies": [],
        }
    node = {
        "comment_id": record.id,
        "author": record.author,
        "body": record.body,
        "score": record.score,
        "created_utc": record.created_utc,
        "edited": record.edited,
        "removed": record.removed,
        "deleted": record.deleted,
        "source_origin": record.source_origin.value,
        "replies": [],
    }
    if record.edited_body is not None:
        node["edited_body"] = record.edited_body
    return node


def build_tree(ledger: Mapping[str, Optional[CommentRecord]], root_id: str,
               sort: str = "top", comment_filter: str = "all") -> List[Dict[str, Any]]:
    """
    Return the replies to ``root_id`` as nested nodes.

    ``root_id`` is normally the thread id; passing a comment id returns that
    comment's subtree (single-comment view) with the comment itself as the
    only top-level node. Comments whose parent is neither in the ledger nor
    the root attach at the top level.
    """
    if sort not in SORTS:
        raise ValueError(f"Unknown sort {sort!r}; expected one of {SORTS}")
    if comment_filter not in FILTERS:
        raise ValueError(f"Unknown filter {comment_filter!r}; expected one of {FILTERS}")

    id_to_node = {cid: _node(cid, record) for cid, record in ledger.items()}
    roots = []
    for cid, record in ledger.items():
        if record is None:
            continue
        parent = id_to_node.get(record.parent_id)
        if parent is not None and record.parent_id != cid:
            parent["replies"].append(id_to_node[cid])
        else:
            roots.append(id_to_node[cid])
    # placeholders have no known parent of their own
    roots.extend(n for cid, n in id_to_node.items() if ledger[cid] is None and n["replies"])

    if root_id in id_to_node:
        roots = [id_to_node[root_id]]

    key = _sort_key(sort)

    def prune(nodes):
        kept = []
        for node in sorted(nodes, key=key):
            node["replies"] = prune(node["replies"])
            if node["replies"] or _matches(node, comment_filter):
                kept.append(node)
        return kept

    return prune(roots)


def count_flags(ledger: Mapping[str, Optional[CommentRecord]]) -> Dict[str, int]:
    counts = {"total": len(ledger), "removed": 0, "deleted": 0, "placeholders": 0}
    for record in ledger.values():
        if record is None:
            counts["placeholders"] += 1
        elif record.removed:
            counts["removed"] += 1
        elif record.deleted:
            counts["deleted"] += 1
    return counts


def to_markdown(post: Dict[str, Any], comment_nodes: List[Dict[str, Any]]) -> str:
    """
    Compact, readable markdown for quick manual review.
    Replies are indented with bullet nesting.
    """
    lines = [f"# {post.get('title') or post.get('id', '')}".strip()]
    if post.get("selftext"):
        lines.append("")
        lines.append(post["selftext"])
    if post.get("permalink"):
        lines.append("")
        lines.append(f"Post: https://www.reddit.com{post['permalink']}")
    lines.append("")
    lines.append("## Comments")
    if not comment_nodes:
        lines.append("_No comments_")
        return "\n".join(lines)

    def emit(node, level=0):
        indent = "  " * level
        if node.get("unavailable"):
            lines.append(f"{indent}- _[unavailable]_")
        else:
            body = (node.get("body") or "").replace("\r", " ").replace("\n", " ").strip()
            tags = [t for t in ("removed", "deleted") if node.get(t)]
            if node.get("edited_body") is not None:
                tags.append("edited")
            suffix = f" _({', '.join(tags)})_" if tags else ""
            lines.append(f"{indent}- **{node.get('author') or '[deleted]'}** ({node['score']}): {body}{suffix}")
        for child in node.get("replies", []):
            emit(child, level + 1)

    for n in comment_nodes:
        emit(n, 0)

    return "\n".join(lines)
