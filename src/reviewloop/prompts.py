from __future__ import annotations

from collections.abc import Sequence

from reviewloop.models import ReviewIssue


MAX_ISSUES_PER_PROMPT = 50
MAX_COMMENT_CHARS = 2000
MAX_SNIPPET_LINES = 500

_VERDICT_FORMAT = """
Respond with one line per issue, in exactly this format:
<issue_id>: YES: <explanation>
<issue_id>: NO: <explanation>
Use the issue ids exactly as given. Do not add any other text.
""".strip()


def _location(issue: ReviewIssue) -> str:
    if issue.line is None:
        return f"{issue.path} (line not specified)"
    return f"{issue.path}:{issue.line}"


def _comment_body(issue: ReviewIssue) -> str:
    body = issue.body.strip()
    if len(body) > MAX_COMMENT_CHARS:
        return f"{body[:MAX_COMMENT_CHARS]}\n... (comment truncated)"
    return body


def _snippet_block(snippet: str) -> str:
    lines = snippet.splitlines()
    if len(lines) > MAX_SNIPPET_LINES:
        omitted = len(lines) - MAX_SNIPPET_LINES
        lines = [*lines[:MAX_SNIPPET_LINES], f"... ({omitted} more lines omitted)"]
    return "\n".join(lines)


def build_fix_prompt(
    *,
    issues: Sequence[ReviewIssue],
    lessons: Sequence[str],
    repo_full_name: str,
) -> str:
    if not issues:
        return ""
    limited = list(issues[:MAX_ISSUES_PER_PROMPT])
    parts: list[str] = [
        f"# Code review issues to fix in {repo_full_name}",
        "",
    ]
    if len(issues) > len(limited):
        parts.append(f"Processing the first {len(limited)} of {len(issues)} issues.")
        parts.append("")

    if lessons:
        parts.append("## Previous attempts (do not repeat these mistakes)")
        parts.extend(f"- {lesson}" for lesson in lessons)
        parts.append("")

    parts.append("## Issues")
    for index, issue in enumerate(limited, start=1):
        parts.append(f"### Issue {index}: {_location(issue)}")
        parts.append(f"Review comment ({issue.author or 'unknown'}):")
        parts.append("```")
        parts.append(_comment_body(issue))
        parts.append("```")
        if issue.code_snippet:
            parts.append("Current code:")
            parts.append("```")
            parts.append(_snippet_block(issue.code_snippet))
            parts.append("```")
        parts.append("")

    parts.extend(
        [
            "## Instructions",
            "1. Address each issue listed above.",
            "2. Make minimal, surgical changes limited to the lines the fix needs.",
            "3. Do not rewrite files, reorganize code or make stylistic changes.",
            "4. Preserve existing structure, names and formatting.",
            "",
            "## If you make zero changes",
            "Output a line starting with `NO_CHANGES:` followed by a specific explanation,",
            "citing the code that already handles each issue.",
        ]
    )
    return "\n".join(parts).strip()


def build_single_issue_prompt(
    *,
    issue: ReviewIssue,
    lessons: Sequence[str],
    repo_full_name: str,
) -> str:
    parts = [
        f"# Fix one code review issue in {repo_full_name}",
        "",
        f"File: {_location(issue)}",
        f"Reviewer: {issue.author or 'unknown'}",
        "",
        "Comment:",
        "```",
        _comment_body(issue),
        "```",
    ]
    if issue.code_snippet:
        parts.extend(["", "Current code:", "```", _snippet_block(issue.code_snippet), "```"])
    if lessons:
        parts.extend(["", "Earlier attempts on this file failed for these reasons:"])
        parts.extend(f"- {lesson}" for lesson in lessons)
    parts.extend(
        [
            "",
            f"Only modify {issue.path}. Keep the change as small as possible.",
            "If no change is needed, output `NO_CHANGES: <specific explanation>`.",
        ]
    )
    return "\n".join(parts)


def build_conflict_prompt(*, paths: Sequence[str], base_branch: str) -> str:
    listed = "\n".join(f"- {path}" for path in paths)
    return f"""
Resolve the merge conflicts in this repository after merging {base_branch}.

Files with conflicts:
{listed}

Instructions:
- Remove every conflict marker (<<<<<<<, =======, >>>>>>>).
- Keep the intent of both sides; prefer the pull request's changes when they conflict.
- Do not modify files outside the list above.
""".strip()


def build_existence_prompt(*, issue: ReviewIssue, snippet: str) -> str:
    return f"""
Given this code review comment:
---
File: {_location(issue)}
Comment: {_comment_body(issue)}
---

And the current code at that location:
---
{snippet or "(no code available)"}
---

Is this issue STILL PRESENT in the code?

Respond with exactly one of these formats:
YES: <brief explanation of why the issue still exists>
NO: <specific explanation citing the code that resolves it>
""".strip()


def build_batch_existence_prompt(
    *,
    entries: Sequence[tuple[str, ReviewIssue]],
    model_context: str | None,
) -> str:
    parts = [
        "For each code review issue below, decide whether it is STILL PRESENT in the current code.",
        "YES means the issue still exists. NO means it is resolved; the explanation must cite",
        "the code that resolves it.",
        "",
    ]
    for issue_key, issue in entries:
        parts.extend(
            [
                f"## {issue_key}",
                f"File: {_location(issue)}",
                "Comment:",
                _comment_body(issue),
                "Current code:",
                "```",
                _snippet_block(issue.code_snippet) or "(no code available)",
                "```",
                "",
            ]
        )
    parts.append(_VERDICT_FORMAT)
    if model_context:
        parts.extend(
            [
                "",
                "After the verdict lines, recommend which editing models to try for the issues",
                "that still exist, best first, using only models from this list:",
                model_context,
                "Add these two lines:",
                "RECOMMENDED_MODELS: <model>, <model>, ...",
                "MODEL_REASONING: <one sentence>",
            ]
        )
    return "\n".join(parts)


def build_verify_prompt(*, issue: ReviewIssue, diff: str) -> str:
    return f"""
Given this code review comment:
---
File: {_location(issue)}
Comment: {_comment_body(issue)}
---

And this code change (diff):
---
{diff or "(empty diff)"}
---

Does this change adequately address the concern raised in the comment?

Respond with exactly one of these formats:
YES: <brief explanation of how the change addresses the issue>
NO: <brief explanation of what is still missing or wrong>
""".strip()


def build_batch_verify_prompt(*, entries: Sequence[tuple[str, ReviewIssue, str]]) -> str:
    parts = [
        "For each code review issue below, decide whether the diff adequately addresses it.",
        "YES means fixed. NO means not fixed; explain what is missing.",
        "",
    ]
    for issue_key, issue, diff in entries:
        parts.extend(
            [
                f"## {issue_key}",
                f"File: {_location(issue)}",
                "Comment:",
                _comment_body(issue),
                "Diff:",
                "```diff",
                diff or "(empty diff)",
                "```",
                "",
            ]
        )
    parts.append(_VERDICT_FORMAT)
    return "\n".join(parts)


def build_audit_prompt(*, entries: Sequence[tuple[str, ReviewIssue]]) -> str:
    parts = [
        "You are an adversarial auditor. Every review issue below was reported as fixed.",
        "Check the current code and be skeptical: answer YES only when the code clearly",
        "resolves the issue, NO otherwise.",
        "",
    ]
    for issue_key, issue in entries:
        parts.extend(
            [
                f"## {issue_key}",
                f"File: {_location(issue)}",
                "Comment:",
                _comment_body(issue),
                "Current code:",
                "```",
                _snippet_block(issue.code_snippet) or "(no code available)",
                "```",
                "",
            ]
        )
    parts.append(_VERDICT_FORMAT)
    return "\n".join(parts)


def build_failed_fix_prompt(*, issue: ReviewIssue, diff: str, rejection: str) -> str:
    return f"""
An attempted fix for this review comment was rejected.

File: {_location(issue)}
Comment: {_comment_body(issue)}

Diff of the attempt:
{diff or "(empty diff)"}

Rejection reason: {rejection}

In one sentence, state what the next attempt must do differently. Output only that sentence.
""".strip()


def build_commit_message_prompt(*, issues: Sequence[ReviewIssue], files: Sequence[str]) -> str:
    listed = "\n".join(f"- {_location(issue)}: {issue.excerpt}" for issue in issues)
    changed = "\n".join(f"- {path}" for path in files)
    return f"""
Write a git commit message for changes that address these review comments:
{listed or "- (none)"}

Changed files:
{changed or "- (none)"}

Rules:
- First line: imperative mood, at most 72 characters, no trailing period.
- Optionally a blank line and a short plain-text body.
- No markdown, no code fences, no issue ids.
""".strip()


def build_resolve_conflict_prompt(*, path: str, content: str, base_branch: str) -> str:
    return f"""
The file {path} contains unresolved merge conflicts after merging {base_branch}.

Return the complete resolved file content inside a single fenced code block.
Remove every conflict marker and keep the intent of both sides.

Current content:
```
{content}
```
""".strip()


def build_direct_fix_prompt(*, issue: ReviewIssue, file_content: str) -> str:
    return f"""
Fix this code review issue by editing the file below.

File: {_location(issue)}
Comment: {_comment_body(issue)}

Current file content:
```
{file_content}
```

Return the complete fixed file inside a single fenced code block. If the issue is
already addressed, return the file unchanged.
""".strip()
