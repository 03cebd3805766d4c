#!/usr/bin/env python3
"""
gh_artifact_clean.py

Command-line utility to delete GitHub Actions artifacts until the repository's
artifact storage fits under a configured limit.

The tool supports two cleanup strategies:

1) Limited cleanup (`--limit` > 0):
   - Determines the size that has to be reserved for the artifacts about to be
     uploaded, either from `--fixed-reserved-size` or by zipping the paths given
     via `--artifact-paths` into throw-away archives.
   - Computes how many bytes must be freed so that existing artifacts plus the
     pending upload fit under the limit.
   - Deletes artifacts, oldest or newest first (`--remove-direction`), until
     enough space has been freed.

2) Full cleanup (no limit):
   - Deletes every artifact of the repository.

The script uses the GitHub REST API (v3) via `requests` and configures retries for
transient server errors and rate limiting on GET/DELETE requests.

Environment variables (used as defaults if CLI flags are not provided):
- GH_TOKEN / GITHUB_TOKEN: GitHub access token (PAT or GitHub Actions token)
- GITHUB_REPOSITORY: repository in the form "owner/repo" (or repo name only, paired with GH_USERNAME)
- GH_USERNAME: repository owner (used when GITHUB_REPOSITORY is not "owner/repo")
- CLEANUP_LIMIT: storage limit, e.g. "1GB" (default: "0", delete everything)
- CLEANUP_REMOVE_DIRECTION: "oldest" or "newest" (default: "oldest")
- CLEANUP_FIXED_RESERVED_SIZE: fixed size to reserve for the upload, e.g. "200MB"
- CLEANUP_ARTIFACT_PATHS: newline separated paths/globs of the pending upload
- CLEANUP_SIMULATE_COMPRESSION_LEVEL: zip level 0-9 for the size simulation (default: "6")
- CLEANUP_FAIL_ON_ERROR: exit with status 1 on errors (default: "true")
- CLEANUP_OPTION_ENABLE_RETRIES: retry transient API errors (default: "true")
- CLEANUP_OPTION_MAX_ALLOWED_RETRIES: retry budget per request (default: "5")
- CLEANUP_OPTION_PAGINATE_SIZE: artifacts per API page (default: "100")

Typical usage:
    python gh_artifact_clean.py --token "$GH_TOKEN" --repo "owner/repo" --limit 1GB --fixed-reserved-size 200MB
    python gh_artifact_clean.py --repo "owner/repo" --limit 1GB --artifact-paths "dist/*.whl"
    python gh_artifact_clean.py --repo "owner/repo" --dry-run
"""

import argparse
import logging
import os
import sys
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import (
    Any,
    Dict,
    Iterable,
    List,
    Literal,
    Mapping,
    Optional,
    Tuple,
    cast,
)

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from artifact_size import format_size, parse_size, simulate_pending_size

logging.basicConfig(level=logging.INFO, format="%(levelname)s: %(message)s")
logger = logging.getLogger(__name__)

_EPOCH = datetime.fromtimestamp(0, tz=timezone.utc)


@dataclass(frozen=True)
class Artifact:
    id: int
    name: str
    size: int
    run_id: Optional[int]
    created_at: Optional[datetime]

    def describe(self) -> str:
        name = ".".join(self.name.split())
        return f"Artifact Id: {self.id} | Artifact Name: {name} | Artifact Size: {format_size(self.size)}"


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def artifact_from_api(item: Mapping[str, Any]) -> Artifact:
    """
    Convert an artifact object of the REST API into an `Artifact`.

    Missing or malformed values become `None` (run id, timestamp), "" (name) or 0 (size).
    """
    run = item.get("workflow_run") or {}
    run_id = run.get("id") if isinstance(run, dict) else None
    size = item.get("size_in_bytes")
    name = item.get("name")

    return Artifact(
        id=cast(int, item.get("id")),
        name=name if isinstance(name, str) else "",
        size=size if isinstance(size, int) else 0,
        run_id=run_id if isinstance(run_id, int) else None,
        created_at=_parse_timestamp(item.get("created_at")),
    )


def free_space_needed(limit: int, pending: int, existing_total: int) -> int:
    """
    Number of bytes that must be freed so that existing artifacts plus the pending
    upload fit under `limit`. Zero or negative means no cleanup is required.

    Raises:
        ValueError: If the pending upload alone exceeds the limit.
    """
    if pending > limit:
        raise ValueError(
            f"Total size of artifacts to upload exceeds the limit: {format_size(pending)}"
        )
    return pending + existing_total - limit


def sort_for_removal(
    artifacts: Iterable[Artifact], direction: Literal["oldest", "newest"]
) -> List[Artifact]:
    """Order artifacts by creation time; artifacts without a timestamp count as epoch."""
    return sorted(
        artifacts,
        key=lambda a: a.created_at or _EPOCH,
        reverse=(direction == "newest"),
    )


def group_by_run(artifacts: Iterable[Artifact]) -> Dict[Optional[int], List[Artifact]]:
    """
    Group artifacts by their originating workflow run.

    Returns:
        Mapping of run id to artifacts, runs in first-seen order.
    """
    groups: Dict[Optional[int], List[Artifact]] = {}
    for art in artifacts:
        groups.setdefault(art.run_id, []).append(art)
    return groups


class GitHubArtifactCleaner:
    """
    Cleanup helper for GitHub Actions artifacts.

    This class deletes workflow-run artifacts using GitHub's REST API until the
    remaining storage (plus a pending upload) fits under `limit`.

    High-level behavior:
        - With `limit > 0` the pending upload size is determined (fixed reservation
          or zip simulation of `artifact_paths`), and artifacts are deleted in
          `remove_direction` order until enough space has been freed.
        - With `limit <= 0` every artifact is deleted.

    Notes:
        - Networking is performed via a shared `requests.Session` with retries
          configured for transient 5xx errors and rate limiting on GET and DELETE.
        - With `dry_run` enabled no DELETE requests are issued; selection is unchanged.

    Args:
        token: GitHub access token used for API authentication.
        repo: Repository name or "owner/repo". If "owner/repo" is provided, it takes
            precedence over `user` for owner resolution.
        user: Repository owner (only used if `repo` is not in "owner/repo" form).
        enable_retries: Retry transient errors and rate limited requests.
        max_retries: Retry budget per request.
        per_page: Page size used for listing artifacts.

    Raises:
        ValueError: If `max_retries` is negative or `per_page` is not within 1..100.
    """

    _DEFAULT_API_BASE: str = "https://api.github.com"
    _DEFAULT_TIMEOUT_S: float = 30.0
    _API_VERSION: str = "2022-11-28"

    def __init__(
        self,
        token: str,
        repo: str,
        user: str,
        *,
        enable_retries: bool = True,
        max_retries: int = 5,
        per_page: int = 100,
    ) -> None:
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if not 1 <= per_page <= 100:
            raise ValueError("per_page must be between 1 and 100")

        # Cleanup behavior (configured via CLI by setting attributes after instantiation).
        self.limit: int = 0
        self.remove_direction: Literal["oldest", "newest"] = "oldest"
        self.fixed_reserved_size: Optional[int] = None
        self.artifact_paths: List[str] = []
        self.compression_level: Optional[int] = 6
        self.dry_run: bool = False

        owner, repo_name = self._split_owner_repo(user=user, repo=repo)

        self.session: requests.Session = requests.Session()
        self.session.headers.update(
            {
                "Authorization": f"Bearer {token}",
                "Accept": "application/vnd.github+json",
                "X-GitHub-Api-Version": self._API_VERSION,
                "User-Agent": "github-artifact-cleaner",
            }
        )

        logger.info(
            "Creating API client with retries %s, max allowed retries: %d",
            "enabled" if enable_retries else "disabled",
            max_retries,
        )
        if enable_retries:
            retry = Retry(
                total=max_retries,
                connect=max_retries,
                read=max_retries,
                backoff_factor=0.5,
                status_forcelist=(429, 500, 502, 503, 504),
                allowed_methods=frozenset({"GET", "DELETE"}),
                respect_retry_after_header=True,
                raise_on_status=False,
            )
            adapter = HTTPAdapter(max_retries=retry)
        else:
            adapter = HTTPAdapter(max_retries=0)
        self.session.mount("https://", adapter)

        self.base: str = self._DEFAULT_API_BASE
        self.owner: str = owner
        self.repo: str = repo_name
        self.per_page: int = per_page
        self._timeout_s: float = self._DEFAULT_TIMEOUT_S

    @staticmethod
    def _split_owner_repo(*, user: str, repo: str) -> Tuple[str, str]:
        """
        Normalize owner/repo inputs.

        Supports both:
        - `repo="owner/repo"` (preferred; owner will be extracted from repo), or
        - `repo="repo"` + `user="owner"`.

        Returns:
            Tuple (owner, repo_name), both stripped of surrounding whitespace.
        """
        if "/" in repo:
            owner, repo_name = repo.split("/", 1)
            return owner.strip(), repo_name.strip()
        return user.strip(), repo.strip()

    def _request(
        self,
        method: str,
        url: str,
        *,
        params: Optional[Mapping[str, Any]] = None,
    ) -> requests.Response:
        """
        Perform an HTTP request against the GitHub API with timeout and enriched errors.

        For non-2xx responses, it raises `requests.HTTPError` and (if possible)
        includes the GitHub JSON error message for easier debugging.

        Raises:
            requests.HTTPError: For non-success responses.
        """
        resp = self.session.request(method, url, params=params, timeout=self._timeout_s)
        try:
            resp.raise_for_status()
        except requests.HTTPError as exc:
            msg: Optional[str] = None
            try:
                payload = resp.json()
                if isinstance(payload, dict):
                    raw_msg = payload.get("message")
                    if isinstance(raw_msg, str):
                        msg = raw_msg
            except ValueError:
                msg = None

            detail = f"{resp.status_code} {resp.reason}"
            if msg:
                detail = f"{detail}: {msg}"
            raise requests.HTTPError(detail, response=resp) from exc
        return resp

    def _iter_paginated(
        self,
        url: str,
        *,
        params: Optional[Mapping[str, Any]],
        items_key: str,
    ) -> Iterable[dict]:
        """
        Iterate items across GitHub-style paginated responses, following the
        `Link: rel="next"` header.

        Yields:
            Items (dict) from each page in response order.
        """
        next_url: Optional[str] = url
        next_params: Optional[Mapping[str, Any]] = params

        while next_url:
            r = self._request("GET", next_url, params=next_params)
            data: Dict[str, Any] = cast(Dict[str, Any], r.json())
            items = data.get(items_key, [])
            if isinstance(items, list):
                for item in items:
                    if isinstance(item, dict):
                        yield item

            next_url = r.links.get("next", {}).get("url")
            # next-link is fully qualified; do not override query params
            next_params = None

    def list_artifacts(self) -> List[Artifact]:
        """
        List all artifacts of the configured repository (including pagination).

        Returns:
            Artifacts in the order returned by the API.
        """
        logger.info("Querying all artifacts for repository: '%s/%s'", self.owner, self.repo)

        url = f"{self.base}/repos/{self.owner}/{self.repo}/actions/artifacts"
        params: Mapping[str, Any] = {"per_page": self.per_page}

        artifacts = [
            artifact_from_api(item)
            for item in self._iter_paginated(url, params=params, items_key="artifacts")
        ]

        logger.info("Found %d existing artifacts in total", len(artifacts))
        for art in artifacts:
            logger.info(" - %s", art.describe())
        return artifacts

    def delete_artifact(self, art: Artifact) -> bool:
        """
        Delete a single artifact.

        Artifacts without a name are skipped. A 404/410 answer means the artifact
        is already gone (e.g. expired) and is only logged.

        Returns:
            True if the artifact was deleted (or would be, in dry-run mode).

        Raises:
            requests.HTTPError: For any other non-success response.
        """
        if not art.name:
            return False

        if self.dry_run:
            logger.info("[DRY-RUN] Would delete %s (RunId %s)", art.describe(), art.run_id)
            return True

        url = f"{self.base}/repos/{self.owner}/{self.repo}/actions/artifacts/{art.id}"
        try:
            self._request("DELETE", url)
        except requests.HTTPError as exc:
            resp = getattr(exc, "response", None)
            status = getattr(resp, "status_code", None)
            if status in (404, 410):
                logger.warning(
                    "Failed to delete artifact '%s' within RunId '%s' because artifact is not found and maybe expired.",
                    art.name,
                    art.run_id,
                )
                return False
            raise
        return True

    def validate(self) -> None:
        """
        Check the configured cleanup behavior.

        Raises:
            ValueError: On an invalid direction, a missing reservation source or a
                missing or out of range compression level
                (only checked when `artifact_paths` is set).
        """
        if self.limit > 0 and not self.artifact_paths:
            if self.fixed_reserved_size is None or self.fixed_reserved_size < 0:
                raise ValueError("Either fixed reserved size or artifact paths must be provided")

        if self.remove_direction not in ("oldest", "newest"):
            raise ValueError("Invalid remove direction, must be either 'newest' or 'oldest'")

        if self.artifact_paths and (
            self.compression_level is None or not 0 <= self.compression_level <= 9
        ):
            raise ValueError("Invalid compression level, must be a number between 0 and 9")

    def pending_size(self) -> int:
        """Size to reserve for the upload: the fixed reservation if positive, else the zip simulation."""
        if self.fixed_reserved_size is not None and self.fixed_reserved_size > 0:
            return self.fixed_reserved_size
        if not self.artifact_paths:
            return 0
        return simulate_pending_size(self.artifact_paths, cast(int, self.compression_level))

    def cleanup(self) -> List[Artifact]:
        """
        Delete artifacts until the storage fits under `self.limit`, or all
        artifacts if no limit is configured.

        Side effects:
            Issues DELETE requests to the GitHub API to remove artifacts.

        Returns:
            The deleted artifacts, in deletion order.
        """
        self.validate()

        artifacts = self.list_artifacts()
        deleted: List[Artifact] = []

        if self.limit > 0:
            pending = self.pending_size()
            existing_total = sum(a.size for a in artifacts)
            needed = free_space_needed(self.limit, pending, existing_total)

            logger.info("Total size that need to be reserved: %s", format_size(pending))
            logger.info("Total size of all existing artifacts: %s", format_size(existing_total))

            if needed <= 0:
                logger.info(
                    "No cleanup required, available space: %s",
                    format_size(self.limit - existing_total),
                )
                return deleted

            logger.info(
                "Preparing to delete artifacts (%s first), require minimum space: %s",
                self.remove_direction,
                format_size(needed),
            )

            freed = 0
            for art in sort_for_removal(artifacts, self.remove_direction):
                if self.delete_artifact(art):
                    deleted.append(art)
                    freed += art.size

                if freed >= needed:
                    logger.info(
                        "Summary: available space after cleanup: %s",
                        format_size(self.limit - existing_total + freed),
                    )
                    break
        else:
            logger.info("Limit is less or equal to 0, start cleanup all existing artifacts")
            for art in artifacts:
                if self.delete_artifact(art):
                    deleted.append(art)

        self.report(deleted)
        return deleted

    def report(self, deleted: List[Artifact]) -> None:
        """
        Log the freed total and one summary line per originating workflow run.

        Args:
            deleted: Artifacts removed by `cleanup()`, in deletion order.
        """
        logger.info(
            "Summary: free up space after cleanup: %s",
            format_size(sum(a.size for a in deleted)),
        )
        for run_id, arts in group_by_run(deleted).items():
            logger.info(
                "Summary: %d artifacts deleted from workflow run 'RunId_%s': [%s]",
                len(arts),
                run_id,
                ", ".join(f"'{a.describe()}'" for a in arts),
            )


def _env_bool(name: str, default: bool) -> bool:
    """Read a boolean environment variable; unset or blank returns `default`."""
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_int(name: str, default: int) -> int:
    """
    Read an integer environment variable; unset or blank returns `default`.

    Raises:
        ValueError: If the value is not an integer.
    """
    value = os.getenv(name)
    if value is None or value.strip() == "":
        return default
    return int(value)


def _split_paths(values: Optional[List[str]]) -> List[str]:
    """Flatten newline separated path inputs, dropping blank lines."""
    paths: List[str] = []
    for value in values or []:
        paths.extend(line.strip() for line in value.splitlines() if line.strip())
    return paths


def _parse_limit(value: Optional[str]) -> int:
    """
    Parse the storage limit; empty means 0 (delete everything).

    Raises:
        ValueError: If a non-empty value cannot be parsed as a size.
    """
    if value is None or value.strip() == "":
        return 0
    limit = parse_size(value)
    if limit is None:
        raise ValueError(f"Invalid limit: '{value}'")
    return limit


def _parse_compression_level(value: Optional[str]) -> Optional[int]:
    """
    Parse the simulation compression level.

    Returns:
        The level as integer, or None if the value is not a number. The range is
        checked by `GitHubArtifactCleaner.validate()`, and only when artifact
        paths are given.
    """
    try:
        return int(str(value).strip())
    except ValueError:
        return None


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Cleanup GitHub Actions artifacts to stay under a storage limit"
    )
    parser.add_argument(
        "--token",
        default=os.getenv("GH_TOKEN") or os.getenv("GITHUB_TOKEN"),
        help="GitHub access token (or GH_TOKEN / GITHUB_TOKEN)",
    )
    parser.add_argument(
        "--repo",
        default=os.getenv("GITHUB_REPOSITORY"),
        help="Repository, e.g. 'org/repo' (or GITHUB_REPOSITORY)",
    )
    parser.add_argument(
        "--user",
        default=os.getenv("GH_USERNAME"),
        help="Repository owner (or GH_USERNAME)",
    )
    parser.add_argument(
        "--limit",
        default=os.getenv("CLEANUP_LIMIT", "0"),
        help="Storage limit, e.g. '1GB'. 0 deletes all artifacts (or CLEANUP_LIMIT)",
    )
    parser.add_argument(
        "--remove-direction",
        choices=("oldest", "newest"),
        default=os.getenv("CLEANUP_REMOVE_DIRECTION", "oldest"),
        help="Which artifacts to delete first (or CLEANUP_REMOVE_DIRECTION)",
    )
    parser.add_argument(
        "--fixed-reserved-size",
        default=os.getenv("CLEANUP_FIXED_RESERVED_SIZE"),
        help="Fixed size to reserve for the pending upload, e.g. '200MB' (or CLEANUP_FIXED_RESERVED_SIZE)",
    )
    parser.add_argument(
        "--artifact-paths",
        action="append",
        default=None,
        help="Newline separated paths/globs of the pending upload, repeatable (or CLEANUP_ARTIFACT_PATHS)",
    )
    parser.add_argument(
        "--simulate-compression-level",
        default=os.getenv("CLEANUP_SIMULATE_COMPRESSION_LEVEL", "6"),
        help="Zip compression level 0-9 for the size simulation (or CLEANUP_SIMULATE_COMPRESSION_LEVEL)",
    )
    parser.add_argument(
        "--fail-on-error",
        action=argparse.BooleanOptionalAction,
        default=_env_bool("CLEANUP_FAIL_ON_ERROR", True),
        help="Exit with status 1 if the cleanup fails (or CLEANUP_FAIL_ON_ERROR)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Only log which artifacts would be deleted.",
    )

    args = parser.parse_args(argv)
    if args.artifact_paths is None:
        env_paths = os.getenv("CLEANUP_ARTIFACT_PATHS")
        args.artifact_paths = [env_paths] if env_paths else []
    args.artifact_paths = _split_paths(args.artifact_paths)
    return args


def main(argv: Optional[List[str]] = None) -> None:
    """
    CLI entry point.

    Parses command-line arguments (with environment variable defaults), validates
    required inputs, configures cleanup behavior and executes cleanup.

    Exit codes:
        0: Success, or failure with --no-fail-on-error
        1: Missing required parameters, or failure with --fail-on-error
    """
    args = parse_args(argv)

    missing: List[str] = []
    if not args.token:
        missing.append("TOKEN")
    if not args.repo:
        missing.append("REPO")

    # `user` is only required when repo is not given as "owner/repo".
    if args.repo and "/" not in args.repo and not args.user:
        missing.append("USER")

    if missing:
        logger.error("Missing required parameter(s): %s", ", ".join(missing))
        sys.exit(1)

    try:
        cleaner = GitHubArtifactCleaner(
            token=args.token,
            repo=args.repo,
            user=args.user or "",
            enable_retries=_env_bool("CLEANUP_OPTION_ENABLE_RETRIES", True),
            max_retries=_env_int("CLEANUP_OPTION_MAX_ALLOWED_RETRIES", 5),
            per_page=_env_int("CLEANUP_OPTION_PAGINATE_SIZE", 100),
        )
        cleaner.limit = _parse_limit(args.limit)
        cleaner.remove_direction = cast(Literal["oldest", "newest"], args.remove_direction)
        cleaner.fixed_reserved_size = parse_size(args.fixed_reserved_size)
        cleaner.artifact_paths = args.artifact_paths
        cleaner.compression_level = _parse_compression_level(args.simulate_compression_level)
        cleaner.dry_run = bool(args.dry_run)
        cleaner.cleanup()
    except Exception as exc:
        if args.fail_on_error:
            logger.error("Artifacts cleanup failed: %s", exc)
            sys.exit(1)
        logger.error("Artifacts cleanup failed (ignored): %s", exc)
        return

    logger.info("Artifacts cleanup completed successfully")


if __name__ == "__main__":
    main()
