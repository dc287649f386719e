"""
memvault LLM contract -- structured tool calls and their repair step.

The engine never talks to a model API directly. It is handed an object with

    call_tool(system_prompt: str, user_prompt: str, tool: dict) -> dict | None

that forces the model to call ``tool`` (name, description, JSON-schema
parameters) and returns the call's arguments, or None when the model did not
call it.

Every tool has a repair_* function returning ``(parsed, warnings)``: parsed is
a clean dict (None only when a required field is unrecoverable) and warnings
lists each field that was corrected to a safe default.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

logger = logging.getLogger("memvault.llm")

ENTRY_TYPES = ("fact", "decision", "preference", "lesson", "event", "todo", "relationship")
EXPIRY_TIERS = ("core", "permanent", "temporary")
DEDUP_ACTIONS = ("ADD", "SKIP", "UPDATE", "SUPERSEDE")
CONFLICT_RELATIONS = ("supersedes", "contradicts", "coexists", "unrelated")

Repaired = Tuple[Optional[Dict[str, Any]], List[str]]


# ---------------------------------------------------------------------------
# Tool definitions
# ---------------------------------------------------------------------------

ONLINE_DEDUP_TOOL = {
    "name": "online_dedup_decision",
    "description": "Decide how a new knowledge entry relates to similar stored entries.",
    "parameters": {
        "type": "object",
        "properties": {
            "action": {"type": "string", "enum": list(DEDUP_ACTIONS)},
            "target_id": {"type": "string", "description": "Existing entry id for SKIP, UPDATE or SUPERSEDE"},
            "merged_content": {"type": "string", "description": "Combined content, required for UPDATE"},
            "reasoning": {"type": "string"},
        },
        "required": ["action", "reasoning"],
    },
}

CLAIM_TOOL = {
    "name": "extract_claim",
    "description": "Extract one structured claim from a knowledge entry when possible.",
    "parameters": {
        "type": "object",
        "properties": {
            "no_claim": {"type": "boolean", "description": "True if the entry has no single dominant claim"},
            "subject_entity": {"type": "string", "description": "Lowercase root noun: alex, acme, paleo"},
            "subject_attribute": {"type": "string", "description": "snake_case aspect: weight, package_manager"},
            "predicate": {"type": "string", "description": "Simple verb: is, prefers, uses, works_at"},
            "object": {"type": "string", "description": "The value: 180 lbs, pnpm"},
            "confidence": {"type": "number", "description": "0-1"},
        },
        "required": ["no_claim"],
    },
}

CONFLICT_TOOL = {
    "name": "classify_conflict",
    "description": "Classify the relationship between two knowledge entries.",
    "parameters": {
        "type": "object",
        "properties": {
            "relation": {"type": "string", "enum": list(CONFLICT_RELATIONS)},
            "confidence": {"type": "number", "description": "0-1"},
            "explanation": {"type": "string"},
        },
        "required": ["relation", "confidence", "explanation"],
    },
}

BATCH_DEDUP_TOOL = {
    "name": "batch_dedup_check",
    "description": "For each numbered pair, decide whether both entries encode the same knowledge.",
    "parameters": {
        "type": "object",
        "properties": {
            "results": {
                "type": "array",
                "items": {
                    "type": "object",
                    "properties": {
                        "pair": {"type": "integer"},
                        "same": {"type": "boolean"},
                        "reason": {"type": "string"},
                    },
                    "required": ["pair", "same"],
                },
            },
        },
        "required": ["results"],
    },
}

MERGE_TOOL = {
    "name": "merge_entries",
    "description": "Merge a cluster of overlapping entries into one canonical entry.",
    "parameters": {
        "type": "object",
        "properties": {
            "content": {"type": "string"},
            "subject": {"type": "string"},
            "type": {"type": "string", "enum": list(ENTRY_TYPES)},
            "importance": {"type": "integer", "minimum": 1, "maximum": 10},
            "expiry": {"type": "string", "enum": list(EXPIRY_TIERS)},
            "tags": {"type": "array", "items": {"type": "string"}},
            "notes": {"type": "string"},
        },
        "required": ["content", "subject", "type", "importance", "expiry"],
    },
}


def call_tool(client: Any, system_prompt: str, user_prompt: str, tool: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Invoke the client; any failure is logged and reported as None."""
    if client is None:
        return None
    try:
        args = client.call_tool(system_prompt, user_prompt, tool)
    except Exception as e:
        logger.warning("LLM call %s failed: %s", tool["name"], e)
        return None
    if not isinstance(args, dict):
        if args is not None:
            logger.warning("LLM call %s returned %s instead of an object", tool["name"], type(args).__name__)
        return None
    return args


# ---------------------------------------------------------------------------
# Field helpers
# ---------------------------------------------------------------------------


def _clean_str(value: Any) -> str:
    return value.strip() if isinstance(value, str) else ""


def clamp_confidence(value: Any, default: float = 0.5) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return default
    if value != value:  # NaN
        return default
    return max(0.0, min(1.0, float(value)))


# ---------------------------------------------------------------------------
# Repair steps
# ---------------------------------------------------------------------------


def repair_dedup_decision(args: Optional[Dict[str, Any]], candidate_ids: List[str]) -> Repaired:
    """Validate an online_dedup_decision call.

    Anything that cannot be acted on safely becomes ADD.
    """
    if args is None:
        return None, ["missing tool call"]
    warnings: List[str] = []
    action = _clean_str(args.get("action")).upper()
    if action not in DEDUP_ACTIONS:
        warnings.append(f"action: invalid {args.get('action')!r}, using ADD")
        action = "ADD"
    target_id = _clean_str(args.get("target_id")) or None
    merged = _clean_str(args.get("merged_content")) or None
    if action != "ADD" and target_id not in candidate_ids:
        warnings.append(f"target_id: {target_id!r} is not a candidate, using ADD")
        action, target_id = "ADD", None
    if action == "UPDATE" and not merged:
        warnings.append("merged_content: missing for UPDATE, using ADD")
        action, target_id = "ADD", None
    return {
        "action": action,
        "target_id": target_id if action != "ADD" else None,
        "merged_content": merged if action == "UPDATE" else None,
        "reasoning": _clean_str(args.get("reasoning")),
    }, warnings


def repair_claim(args: Optional[Dict[str, Any]]) -> Repaired:
    """Validate an extract_claim call; None when there is no usable claim."""
    if args is None:
        return None, ["missing tool call"]
    if not isinstance(args.get("no_claim"), bool):
        return None, ["no_claim: not a boolean"]
    if args["no_claim"]:
        return None, []
    warnings: List[str] = []
    fields = {k: _clean_str(args.get(k)) for k in ("subject_entity", "subject_attribute", "predicate", "object")}
    missing = [k for k, v in fields.items() if not v]
    if missing:
        return None, [f"{k}: missing" for k in missing]
    confidence = clamp_confidence(args.get("confidence"), 0.5)
    if confidence != args.get("confidence"):
        warnings.append(f"confidence: {args.get('confidence')!r} clamped to {confidence}")
    fields["confidence"] = confidence
    return fields, warnings


def repair_conflict(args: Optional[Dict[str, Any]]) -> Repaired:
    """Validate a classify_conflict call. Unknown relations are unrecoverable."""
    if args is None:
        return None, ["missing tool call"]
    relation = _clean_str(args.get("relation")).lower()
    if relation not in CONFLICT_RELATIONS:
        return None, [f"relation: invalid {args.get('relation')!r}"]
    warnings: List[str] = []
    confidence = clamp_confidence(args.get("confidence"), 0.0)
    if confidence != args.get("confidence"):
        warnings.append(f"confidence: {args.get('confidence')!r} clamped to {confidence}")
    return {"relation": relation, "confidence": confidence, "explanation": _clean_str(args.get("explanation"))}, warnings


def repair_batch_dedup(args: Optional[Dict[str, Any]], pair_count: int) -> Repaired:
    """Map a batch_dedup_check call to {pair_index: same}; missing pairs are False.

    Pairs are numbered from 1 in the prompt; verdict keys are 0-based.
    """
    if args is None or not isinstance(args.get("results"), list):
        return None, ["results: missing"]
    warnings: List[str] = []
    verdicts = {i: False for i in range(pair_count)}
    for item in args["results"]:
        if not isinstance(item, dict):
            warnings.append("results: non-object item ignored")
            continue
        pair = item.get("pair")
        if isinstance(pair, bool) or not isinstance(pair, int) or not 1 <= pair <= pair_count:
            warnings.append(f"pair: invalid index {pair!r} ignored")
            continue
        verdicts[pair - 1] = item.get("same") is True
    return {"verdicts": verdicts}, warnings


def repair_merge(args: Optional[Dict[str, Any]]) -> Repaired:
    """Validate a merge_entries call.

    content and subject are required; type falls back to fact (callers then
    force the cluster's majority type), importance to 5, expiry to permanent.
    """
    if args is None:
        return None, ["missing tool call"]
    content = _clean_str(args.get("content"))
    subject = _clean_str(args.get("subject"))
    if not content or not subject:
        return None, ["content/subject: missing"]

    warnings: List[str] = []
    entry_type = _clean_str(args.get("type")).lower()
    if entry_type not in ENTRY_TYPES:
        warnings.append(f"type: invalid {args.get('type')!r}, using fact")
        entry_type = "fact"

    importance = args.get("importance")
    if isinstance(importance, float) and importance.is_integer():
        importance = int(importance)
    if isinstance(importance, bool) or not isinstance(importance, int) or not 1 <= importance <= 10:
        warnings.append(f"importance: invalid {args.get('importance')!r}, using 5")
        importance = 5

    expiry = _clean_str(args.get("expiry")).lower()
    if expiry not in EXPIRY_TIERS:
        warnings.append(f"expiry: invalid {args.get('expiry')!r}, using permanent")
        expiry = "permanent"

    tags = args.get("tags")
    if tags is None:
        tags = []
    elif not isinstance(tags, list):
        warnings.append("tags: not a list, ignored")
        tags = []
    tags = [t.strip().lower() for t in tags if isinstance(t, str) and t.strip()]

    return {
        "content": content,
        "subject": subject,
        "type": entry_type,
        "importance": importance,
        "expiry": expiry,
        "tags": tags,
        "notes": _clean_str(args.get("notes")),
    }, warnings


def log_repairs(tool_name: str, warnings: List[str], verbose: bool = False) -> None:
    """Log field corrections: info when verbose, debug otherwise."""
    level = logging.INFO if verbose else logging.DEBUG
    for w in warnings:
        logger.log(level, "[%s] %s", tool_name, w)
