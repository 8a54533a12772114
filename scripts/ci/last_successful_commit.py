#!/usr/bin/env python3
"""Find the commit of the most recent qualifying run of a GitHub Actions workflow.

Selection rules:
- only runs of the named workflow (single page, 100 most recent) are considered
- with no job filter, a run qualifies on its own `success` conclusion
- with a job filter, a job of that exact name must have succeeded in the run
- an optional branch filter restricts runs to one head branch
- with verification enabled, the run's head SHA must exist in the local checkout
- when nothing qualifies, the earliest-seen candidate SHA is used as a fallback
"""

from __future__ import annotations

import argparse
import datetime as dt
import json
import os
import subprocess
import sys
import urllib.error
import urllib.parse
import urllib.request
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterable, Sequence

DEFAULT_API_URL = "https://api.github.com"
USER_AGENT = "last-successful-commit/1"
PER_PAGE = 100
GIT_HISTORY_CMD = ["git", "log", "--format=format:%H"]


def log_debug(message: str) -> None:
    print(f"::debug::{message}", file=sys.stderr)


def log_info(message: str) -> None:
    print(message, file=sys.stderr)


def log_warning(message: str) -> None:
    print(f"::warning::{message}", file=sys.stderr)


def log_error(message: str) -> None:
    print(f"::error::{message}", file=sys.stderr)


def parse_bool(value: str) -> bool:
    return value.strip().lower() == "true"


def parse_timestamp(value: str) -> dt.datetime:
    return dt.datetime.fromisoformat(value.replace("Z", "+00:00"))


@dataclass(frozen=True)
class RunRecord:
    id: int
    head_sha: str
    head_branch: str | None
    created_at: dt.datetime
    conclusion: str | None
    html_url: str = ""

    @classmethod
    def from_api(cls, raw: dict) -> "RunRecord":
        try:
            return cls(
                id=raw["id"],
                head_sha=str(raw["head_sha"]),
                head_branch=raw.get("head_branch"),
                created_at=parse_timestamp(str(raw["created_at"])),
                conclusion=raw.get("conclusion"),
                html_url=str(raw.get("html_url") or ""),
            )
        except (KeyError, TypeError, ValueError) as exc:
            raise RuntimeError(f"Malformed workflow run record: {exc!r}") from exc


@dataclass(frozen=True)
class JobOutcome:
    name: str
    conclusion: str | None

    @classmethod
    def from_api(cls, raw: dict) -> "JobOutcome":
        if "name" not in raw:
            raise RuntimeError("Malformed job record: missing `name`.")
        return cls(name=str(raw["name"]), conclusion=raw.get("conclusion"))


@dataclass(frozen=True)
class SelectionCriteria:
    branch: str | None = None
    job: str | None = None
    verify: bool = False

    @classmethod
    def from_inputs(cls, *, branch: str, job: str, verify: bool) -> "SelectionCriteria":
        return cls(branch=branch.strip() or None, job=job.strip() or None, verify=verify)


# ---------------------------------------------------------------------------
# Commit verification
# ---------------------------------------------------------------------------


def git_commit_history(repo_root: Path) -> list[str]:
    proc = subprocess.run(
        GIT_HISTORY_CMD,
        cwd=str(repo_root),
        text=True,
        capture_output=True,
        check=False,
    )
    if proc.returncode != 0:
        raise RuntimeError(
            f"{' '.join(GIT_HISTORY_CMD)} failed ({proc.returncode}): {proc.stderr.strip()}"
        )
    return [line.strip() for line in proc.stdout.splitlines() if line.strip()]


@dataclass
class CommitHistory:
    """Commit SHAs reachable in the checkout, loaded at most once.

    `shas` stays `None` until the first load attempt. A failed attempt leaves
    an empty set behind and is never retried.
    """

    shas: frozenset[str] | None = None

    @property
    def loaded(self) -> bool:
        return self.shas is not None


class CommitVerifier:
    def __init__(
        self,
        history: CommitHistory,
        list_commits: Callable[[], Sequence[str]],
    ) -> None:
        self.history = history
        self.list_commits = list_commits

    def verify(self, sha: str) -> bool:
        if not self.history.loaded:
            log_info(f'Getting list of SHAs in repo via command "{" ".join(GIT_HISTORY_CMD)}"')
            try:
                self.history.shas = frozenset(self.list_commits())
            except (RuntimeError, OSError) as exc:
                self.history.shas = frozenset()
                log_warning(f"Error while attempting to get list of SHAs: {exc}")
                return False

        log_info(f"Looking for SHA {sha} in repo SHAs")
        return sha in self.history.shas


# ---------------------------------------------------------------------------
# Run filtering and ranking
# ---------------------------------------------------------------------------


def run_is_candidate(run: RunRecord, criteria: SelectionCriteria) -> bool:
    if criteria.branch and run.head_branch != criteria.branch:
        return False
    # A requested job is checked per run later; the run's overall conclusion is irrelevant then.
    return bool(criteria.job) or run.conclusion == "success"


def rank_runs(runs: Iterable[RunRecord], criteria: SelectionCriteria) -> list[RunRecord]:
    """Return candidate runs, most recent first; equal timestamps keep fetch order."""
    candidates = [run for run in runs if run_is_candidate(run, criteria)]
    return sorted(candidates, key=lambda run: run.created_at, reverse=True)


def most_recent_run(runs: Iterable[RunRecord]) -> RunRecord | None:
    ordered = sorted(runs, key=lambda run: run.created_at, reverse=True)
    return ordered[0] if ordered else None


# ---------------------------------------------------------------------------
# Selection
# ---------------------------------------------------------------------------


@dataclass
class Selection:
    qualified: RunRecord | None = None
    fallback: RunRecord | None = None
    inspected: int = 0
    skipped: list[dict[str, object]] = field(default_factory=list)

    @property
    def sha(self) -> str | None:
        return self.qualified.head_sha if self.qualified else None

    @property
    def fallback_sha(self) -> str | None:
        return self.fallback.head_sha if self.fallback else None

    def skip(self, run: RunRecord, reason: str) -> None:
        self.skipped.append({"run_id": run.id, "sha": run.head_sha, "reason": reason})


def job_succeeded(jobs: Iterable[JobOutcome], job_name: str) -> bool:
    for job in jobs:
        log_debug(f"Checking job: {job.name} ({job.conclusion})")
        if job.name == job_name and job.conclusion == "success":
            return True
    return False


def select_run(
    ranked_runs: Iterable[RunRecord],
    criteria: SelectionCriteria,
    job_lookup: Callable[[RunRecord], Iterable[JobOutcome]],
    verifier: CommitVerifier,
) -> Selection:
    """Scan ranked runs and stop at the first one passing every enabled check.

    The first run seen is kept as the fallback whether or not it qualifies.
    Jobs are fetched one run at a time, only for runs that reach the job check.
    """
    selection = Selection()
    for run in ranked_runs:
        selection.inspected += 1
        if selection.fallback is None:
            selection.fallback = run
        log_debug(f"Run SHA: {run.head_sha}")
        log_debug(f"Run Branch: {run.head_branch}")
        log_debug(f"Wanted branch: {criteria.branch}")

        if criteria.branch and run.head_branch != criteria.branch:
            selection.skip(run, "branch_mismatch")
            continue

        if criteria.verify and not verifier.verify(run.head_sha):
            log_warning(f"Failed to verify commit {run.head_sha}. Skipping.")
            selection.skip(run, "commit_not_found")
            continue

        if criteria.job and not job_succeeded(job_lookup(run), criteria.job):
            log_info(f"Job `{criteria.job}` did not succeed in run {run.html_url or run.id}. Skipping.")
            selection.skip(run, "job_not_successful")
            continue

        if criteria.verify:
            log_info(f"Commit {run.head_sha} from run {run.html_url} verified as last successful CI run.")
        else:
            log_info(f"Using {run.head_sha} from run {run.html_url} as last successful CI run.")
        selection.qualified = run
        break
    return selection


# ---------------------------------------------------------------------------
# GitHub REST API
# ---------------------------------------------------------------------------


class GitHubClient:
    def __init__(self, api_url: str, token: str, *, timeout_s: int = 30) -> None:
        self.api_url = api_url.rstrip("/")
        self.token = token
        self.timeout_s = timeout_s

    def get(self, path: str, params: dict[str, object] | None = None) -> dict:
        url = f"{self.api_url}{path}"
        if params:
            url = f"{url}?{urllib.parse.urlencode(params)}"
        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
            "User-Agent": USER_AGENT,
        }
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        request = urllib.request.Request(url, headers=headers, method="GET")
        log_debug(f"GET {url}")
        try:
            with urllib.request.urlopen(request, timeout=self.timeout_s) as response:
                body = response.read().decode("utf-8")
        except urllib.error.HTTPError as exc:
            detail = exc.read().decode("utf-8", errors="replace") if exc.fp else ""
            raise RuntimeError(f"GET {path} failed (HTTP {exc.code}): {detail.strip()[:512]}") from exc
        except urllib.error.URLError as exc:
            raise RuntimeError(f"GET {path} failed: {exc.reason}") from exc

        try:
            payload = json.loads(body)
        except json.JSONDecodeError as exc:
            raise RuntimeError(f"GET {path} returned invalid JSON: {exc}") from exc
        if not isinstance(payload, dict):
            raise RuntimeError(f"GET {path} returned an unexpected payload type.")
        return payload

    def _list(self, path: str, key: str) -> list[dict]:
        payload = self.get(path, {"per_page": PER_PAGE})
        items = payload.get(key)
        if not isinstance(items, list):
            raise RuntimeError(f"GET {path} response is missing the `{key}` array.")
        return [item for item in items if isinstance(item, dict)]

    def list_workflows(self, owner: str, repo: str) -> list[dict]:
        return self._list(f"/repos/{owner}/{repo}/actions/workflows", "workflows")

    def list_workflow_runs(self, owner: str, repo: str, workflow_id: int) -> list[RunRecord]:
        raw_runs = self._list(f"/repos/{owner}/{repo}/actions/workflows/{workflow_id}/runs", "workflow_runs")
        return [RunRecord.from_api(raw) for raw in raw_runs]

    def list_jobs_for_run(self, owner: str, repo: str, run_id: int) -> list[JobOutcome]:
        raw_jobs = self._list(f"/repos/{owner}/{repo}/actions/runs/{run_id}/jobs", "jobs")
        return [JobOutcome.from_api(raw) for raw in raw_jobs]


def resolve_workflow_id(workflows: Iterable[dict], name: str) -> int | None:
    wanted = name.lower()
    for workflow in workflows:
        if str(workflow.get("name", "")).lower() == wanted:
            return workflow.get("id")
    return None


def split_repository(repository: str) -> tuple[str, str]:
    parts = repository.strip().split("/")
    if len(parts) != 2 or not all(parts):
        raise ValueError(f"Repository `{repository}` must be in `owner/name` form.")
    return (parts[0], parts[1])


# ---------------------------------------------------------------------------
# Output
# ---------------------------------------------------------------------------


def write_github_output(name: str, value: str) -> None:
    output_path = os.environ.get("GITHUB_OUTPUT")
    if not output_path:
        return
    with open(output_path, "a", encoding="utf-8") as handle:
        handle.write(f"{name}={value}\n")


def build_markdown(report: dict) -> str:
    lines: list[str] = []
    lines.append("# Last Successful Commit")
    lines.append("")
    lines.append(f"- Generated at: `{report['generated_at']}`")
    lines.append(f"- Repository: `{report['repository']}`")
    lines.append(f"- Workflow: `{report['workflow']}` (id `{report['workflow_id']}`)")
    lines.append(f"- Branch filter: `{report['criteria']['branch'] or 'n/a'}`")
    lines.append(f"- Job filter: `{report['criteria']['job'] or 'n/a'}`")
    lines.append(f"- Verify commits: `{report['criteria']['verify']}`")
    lines.append(f"- Runs fetched: `{report['runs_fetched']}`")
    lines.append(f"- Candidate runs: `{report['candidate_runs']}`")
    lines.append(f"- Runs inspected: `{report['runs_inspected']}`")
    lines.append(f"- Selected SHA: `{report['sha'] or 'n/a'}`")
    lines.append(f"- Fallback used: `{report['fallback_used']}`")
    if report["run_url"]:
        lines.append(f"- Run: {report['run_url']}")
    lines.append("")

    if report["skipped"]:
        lines.append("## Skipped Runs")
        lines.append("| Run | SHA | Reason |")
        lines.append("| ---:| --- | --- |")
        for item in report["skipped"]:
            lines.append(f"| `{item['run_id']}` | `{item['sha']}` | `{item['reason']}` |")
        lines.append("")

    if report["warnings"]:
        lines.append("## Warnings")
        for item in report["warnings"]:
            lines.append(f"- {item}")
        lines.append("")
    return "\n".join(lines).rstrip() + "\n"


def write_report(report: dict, *, output_json: str, output_md: str) -> None:
    if output_json:
        out_json = Path(output_json)
        out_json.parent.mkdir(parents=True, exist_ok=True)
        out_json.write_text(json.dumps(report, indent=2, ensure_ascii=False) + "\n", encoding="utf-8")
    if output_md:
        out_md = Path(output_md)
        out_md.parent.mkdir(parents=True, exist_ok=True)
        out_md.write_text(build_markdown(report), encoding="utf-8")


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def parse_args(argv: Sequence[str] | None = None) -> argparse.Namespace:
    env = os.environ
    parser = argparse.ArgumentParser(
        description="Find the commit SHA of the last successful run of a GitHub Actions workflow."
    )
    parser.add_argument("--token", default=env.get("INPUT_TOKEN") or env.get("GITHUB_TOKEN", ""))
    parser.add_argument(
        "--repo",
        default=env.get("INPUT_REPO") or env.get("GITHUB_REPOSITORY", ""),
        help="Repository in owner/name form",
    )
    parser.add_argument("--workflow", default=env.get("INPUT_WORKFLOW", ""), help="Workflow display name")
    parser.add_argument("--branch", default=env.get("INPUT_BRANCH", ""), help="Only consider runs on this branch")
    parser.add_argument("--job", default=env.get("INPUT_JOB", ""), help="Require this job to have succeeded")
    parser.add_argument(
        "--verify",
        default=env.get("INPUT_VERIFY", "false"),
        help="`true` to require the run's commit to exist in the local checkout",
    )
    parser.add_argument("--api-url", default=env.get("GITHUB_API_URL") or DEFAULT_API_URL)
    parser.add_argument("--repo-root", default=".", help="Checkout used for commit verification")
    parser.add_argument("--timeout", type=int, default=30, help="HTTP timeout in seconds")
    parser.add_argument("--output-json", default="")
    parser.add_argument("--output-md", default="")
    return parser.parse_args(argv)


def main(argv: Sequence[str] | None = None) -> int:
    args = parse_args(argv)
    warnings: list[str] = []

    def warn(message: str) -> None:
        warnings.append(message)
        log_warning(message)

    try:
        owner, repo = split_repository(args.repo)
        criteria = SelectionCriteria.from_inputs(
            branch=args.branch,
            job=args.job,
            verify=parse_bool(args.verify),
        )
        client = GitHubClient(args.api_url, args.token, timeout_s=args.timeout)

        workflow_id = resolve_workflow_id(client.list_workflows(owner, repo), args.workflow)
        if workflow_id is None:
            log_error(f'No workflow exists with the name "{args.workflow}"')
            return 2
        log_info(f"Discovered workflowId for search: {workflow_id}")

        runs = client.list_workflow_runs(owner, repo, workflow_id)
        ranked = rank_runs(runs, criteria)
        log_debug(f"Found {len(ranked)} runs")

        verifier = CommitVerifier(CommitHistory(), lambda: git_commit_history(Path(args.repo_root)))
        selection = select_run(
            ranked,
            criteria,
            lambda run: client.list_jobs_for_run(owner, repo, run.id),
            verifier,
        )

        chosen = selection.qualified
        fallback_used = False
        if not ranked:
            scope = f" for branch {criteria.branch}" if criteria.branch else ""
            log_info(f"No previous runs found{scope}.")
        if chosen is None and runs:
            chosen = selection.fallback or most_recent_run(runs)
            fallback_used = True
            warn(
                "Unable to determine SHA of last successful commit "
                f"(possibly outside the window of {len(ranked)} runs). Using earliest SHA available."
            )

        sha = chosen.head_sha if chosen else ""
        write_github_output("sha", sha)
        if sha:
            print(sha)

        if args.output_json or args.output_md:
            report = {
                "schema_version": "ci.audit.v1",
                "event_type": "last_successful_commit",
                "generated_at": dt.datetime.now(dt.timezone.utc).isoformat(),
                "repository": f"{owner}/{repo}",
                "workflow": args.workflow,
                "workflow_id": workflow_id,
                "criteria": {
                    "branch": criteria.branch,
                    "job": criteria.job,
                    "verify": criteria.verify,
                },
                "runs_fetched": len(runs),
                "candidate_runs": len(ranked),
                "runs_inspected": selection.inspected,
                "skipped": selection.skipped,
                "sha": sha or None,
                "run_id": chosen.id if chosen else None,
                "run_url": chosen.html_url if chosen else None,
                "fallback_used": fallback_used,
                "warnings": warnings,
            }
            write_report(report, output_json=args.output_json, output_md=args.output_md)
    except Exception as exc:  # noqa: BLE001
        log_error(str(exc))
        return 2
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
