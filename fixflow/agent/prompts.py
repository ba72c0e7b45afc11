"""Prompt templates for the fix query and the pull request body.

The same system prompt and user prompt are sent to every provider, so a
fallback provider receives exactly what the primary received.
"""

from __future__ import annotations

from fixflow.schemas import ModelPatch, RepoContext

# =============================================================================
# System Prompt
# =============================================================================

SYSTEM_PROMPT = """You are FixFlow, a principal software engineer and QA architect.
Your goal: fix the reported issue without introducing regressions.

INSTRUCTIONS:
1. ANALYSIS:
   - Identify the root cause.
   - Explicitly state: "The bug exists because..."

2. STRATEGY:
   - Plan the fix.
   - Identify dependencies: "If I change this, what might break?"

3. EXECUTION:
   - Provide the corrected code.
   - Provide the complete file content, not a diff.

4. SAFETY CHECK:
   - Review your own code for common regressions.
   - If you modify a function signature, note all callers that need updates.

5. CONFIDENCE:
   - Rate from 0 to 100 how confident you are that the change fixes the issue.

OUTPUT FORMAT (JSON ONLY):
{
  "analysis": "The bug exists because...",
  "file_path": "path/to/file.ext",
  "code_change": "complete file content here",
  "commit_message": "fix: [detailed description]",
  "confidence_score": 0-100
}"""


# =============================================================================
# Fix Prompt
# =============================================================================

FIX_PROMPT = """CONTEXT:
- Repository: {repository}
- Issue Title: {issue_title}
- Issue Body: {issue_body}
{comments_section}
FILE TREE:
{file_tree}

Please analyze this issue and provide a fix. Return your response as JSON.
"""


# =============================================================================
# Pull Request Body
# =============================================================================

PR_BODY = """## 🔧 Automated Fix for Issue #{issue_number}

**Issue:** {issue_title}

---

### 📋 Analysis

{analysis}

---

### 🛡️ Confidence Score: {confidence_score}/100

---

*This PR was automatically generated by FixFlow.*

{run_marker}Closes #{issue_number}
"""

RUN_MARKER = "<!-- fixflow-run: {run_id} -->"


# =============================================================================
# Helper Functions
# =============================================================================

def build_fix_prompt(context: RepoContext) -> str:
    """Format the fix prompt from gathered repository context."""
    comments_section = ""
    if context.discussion_text.strip():
        comments_section = f"\nCOMMENTS:\n{context.discussion_text}\n"
    return FIX_PROMPT.format(
        repository=f"{context.owner}/{context.repo}",
        issue_title=context.issue_title,
        issue_body=context.issue_body or "(no description)",
        comments_section=comments_section,
        file_tree=context.file_tree_summary or "(empty)",
    )


def format_pr_title(patch: ModelPatch) -> str:
    return f"🤖 {patch.commit_message}"


def run_marker(run_id: str) -> str:
    """Hidden comment tying a PR body to the run that opened it."""
    return RUN_MARKER.format(run_id=run_id)


def format_pr_body(
    patch: ModelPatch, *, issue_number: int, issue_title: str, run_id: str | None = None
) -> str:
    """Render the PR body. Always ends with the issue-closing reference."""
    return PR_BODY.format(
        run_marker=f"{run_marker(run_id)}\n\n" if run_id else "",
        issue_number=issue_number,
        issue_title=issue_title,
        analysis=patch.analysis.strip() or "(no analysis provided)",
        confidence_score=patch.confidence_score,
    )
