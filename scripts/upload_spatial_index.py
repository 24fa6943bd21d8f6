#!/usr/bin/env python3
"""
Publish the precinct spatial index as a GitHub release asset

What this does (in plain English):
- Checks we have a tag, the built index file and a GITHUB_TOKEN.
- Looks up the release for that tag; if that lookup fails for any reason
  (usually a 404), creates the release with the tag as its name.
- Streams the file up as a release asset with explicit Content-Type and
  Content-Length headers (GitHub wants the length before the body).

Notes & guardrails:
- GITHUB_TOKEN can come from the environment or a local .env file.
- We don't look for an existing asset of the same name first. GitHub answers a
  duplicate upload with a 422, which shows up as an [ERROR] upload line.
- No retries. Any failure prints one [ERROR] line and exits 1.

Usage:
  python -m scripts.upload_spatial_index <tag> [--file build/...json]
  upload-spatial-index <tag>        (after pip install -e .)
"""
from __future__ import annotations

import argparse
import mimetypes
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

import requests
from dotenv import load_dotenv

from scripts.stages import StageError, report_failure, stage

# ------------ Config ------------
ROOT = Path(__file__).resolve().parents[1]
INDEX_FILE = ROOT / "build" / "precincts-with-results-spatial-index.json"
TOKEN_ENV = "GITHUB_TOKEN"


@dataclass(frozen=True)
class UploadConfig:
    owner: str = "concerned-us-citizen"
    repo: str = "protest-map"
    file_path: Path = field(default_factory=lambda: INDEX_FILE)
    api_url: str = "https://api.github.com"
    uploads_url: str = "https://uploads.github.com"
    release_body: str = "Automated release of precincts spatial index"

    @property
    def repo_path(self) -> str:
        return f"repos/{self.owner}/{self.repo}"

    def release_page(self, tag: str) -> str:
        return f"https://github.com/{self.owner}/{self.repo}/releases/tag/{tag}"


# ------------ GitHub REST ------------
class GitHubReleases:
    """
    The three release endpoints we need, over one authenticated requests.Session.
    """

    def __init__(self, cfg: UploadConfig, token: str, session: Optional[requests.Session] = None) -> None:
        self.cfg = cfg
        self.session = session or requests.Session()
        self.session.headers.update({
            "Authorization": f"Bearer {token}",
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": "2022-11-28",
        })

    def get_release_by_tag(self, tag: str) -> dict:
        r = self.session.get(f"{self.cfg.api_url}/{self.cfg.repo_path}/releases/tags/{tag}")
        r.raise_for_status()
        return r.json()

    def create_release(self, tag: str) -> dict:
        r = self.session.post(
            f"{self.cfg.api_url}/{self.cfg.repo_path}/releases",
            json={"tag_name": tag, "name": tag, "body": self.cfg.release_body},
        )
        r.raise_for_status()
        return r.json()

    def upload_asset(self, release_id: int, path: Path) -> dict:
        """
        POST the file body to the uploads host. The open file handle goes to
        requests as-is, so the payload streams from disk.
        """
        size = path.stat().st_size
        content_type = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
        with path.open("rb") as f:
            r = self.session.post(
                f"{self.cfg.uploads_url}/{self.cfg.repo_path}/releases/{release_id}/assets",
                params={"name": path.name},
                data=f,
                headers={"Content-Type": content_type, "Content-Length": str(size)},
            )
        r.raise_for_status()
        return r.json()


# ------------ Steps ------------
def validate_inputs(tag: Optional[str], file_path: Path, token: Optional[str]) -> str:
    """
    Fail fast on anything we can check without the network.

    Returns:
        str: the token, now known to be set.
    """
    if not tag:
        raise StageError("validate", "a release tag is required")
    if not file_path.exists():
        raise StageError("validate", f"File not found at {file_path}", "Run build-spatial-index first.")
    if not token:
        raise StageError("validate", f"{TOKEN_ENV} environment variable not set.")
    return token


def resolve_release(client: GitHubReleases, tag: str) -> dict:
    """
    Reuse the release for `tag` if GitHub gives it to us; otherwise make one.

    Any lookup failure counts as "missing", not just a 404.
    """
    with stage("release"):
        try:
            release = client.get_release_by_tag(tag)
            print(f"[OK] Found release for tag: {tag}")
        except requests.RequestException:
            print(f"[INFO] Creating release '{tag}'...")
            release = client.create_release(tag)
    return release


def upload(client: GitHubReleases, release: dict, path: Path) -> dict:
    with stage("upload"):
        print(f"[INFO] Uploading {path.name} ({path.stat().st_size} bytes)...")
        return client.upload_asset(release["id"], path)


def run(cfg: UploadConfig, tag: str, token: Optional[str], session: Optional[requests.Session] = None) -> dict:
    """
    Validate -> resolve/create release -> upload. Raises StageError on the first
    failure.

    Returns:
        dict: GitHub's asset record for the upload.
    """
    token = validate_inputs(tag, cfg.file_path, token)
    client = GitHubReleases(cfg, token, session)
    release = resolve_release(client, tag)
    asset = upload(client, release, cfg.file_path)
    print(f"[DONE] {cfg.release_page(tag)}")
    return asset


def main(argv: Optional[List[str]] = None) -> int:
    """
    CLI entrypoint. A missing tag prints usage and exits 1 before any network call.
    """
    ap = argparse.ArgumentParser(description="Upload the precinct spatial index to a GitHub release.")
    ap.add_argument("tag", nargs="?", help="Release tag (created if it doesn't exist)")
    ap.add_argument("--file", type=Path, default=INDEX_FILE, help="File to upload")
    args = ap.parse_args(argv)

    if not args.tag:
        ap.print_usage(sys.stderr)
        return 1

    load_dotenv()
    cfg = UploadConfig(file_path=args.file)
    try:
        run(cfg, args.tag, os.environ.get(TOKEN_ENV))
    except StageError as e:
        return report_failure(e)
    return 0


if __name__ == "__main__":
    sys.exit(main())
