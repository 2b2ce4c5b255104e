# paydesk/storage/github_storage.py
# ============================================================================
# PAYDESK — GITHUB ARCHIVE
# ============================================================================
# Commits invoice PDFs into a repository through the contents API. An
# existing file at the same path is updated in place (its blob sha is looked
# up first), so re-archiving an order produces a new commit, not an error.
# ============================================================================

import base64
import logging
from typing import Optional
from urllib.parse import quote

import httpx

from paydesk.errors import SinkError
from paydesk.pipeline.retry import raise_for_transient_status
from paydesk.storage.base import ArchiveReceipt, IArchiveSink

logger = logging.getLogger("Paydesk.GitHubStorage")

GITHUB_API = "https://api.github.com"


class GitHubArchive(IArchiveSink):

    name = "github"
    # PUT against the looked-up blob sha overwrites the same path
    idempotent = True

    def __init__(
        self,
        token: str,
        owner: str,
        repo: str,
        branch: str = "main",
        directory: str = "invoices",
        api_base: str = GITHUB_API,
        timeout_seconds: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.owner = owner
        self.repo = repo
        self.branch = branch
        self.directory = directory.strip("/")
        self._client = httpx.AsyncClient(
            base_url=api_base,
            timeout=timeout_seconds,
            transport=transport,
            headers={
                "Authorization": f"token {token}",
                "Accept": "application/vnd.github+json",
                "User-Agent": "paydesk-invoice-uploader",
            },
        )

    async def close(self) -> None:
        await self._client.aclose()

    def _contents_url(self, repo_path: str) -> str:
        return f"/repos/{self.owner}/{self.repo}/contents/{quote(repo_path, safe='/')}"

    async def _existing_sha(self, url: str) -> Optional[str]:
        response = await self._client.get(url, params={"ref": self.branch})
        if response.status_code == 404:
            return None
        raise_for_transient_status(response, "GitHub")
        if response.status_code != 200:
            raise SinkError(f"GitHub lookup failed: {response.status_code} {response.text[:200]}")
        data = response.json()
        return data.get("sha") if isinstance(data, dict) else None

    async def archive(self, filename: str, content: bytes) -> ArchiveReceipt:
        repo_path = f"{self.directory}/{filename}" if self.directory else filename
        url = self._contents_url(repo_path)

        sha = await self._existing_sha(url)
        payload = {
            "message": f"Add invoice {filename}",
            "content": base64.b64encode(content).decode("ascii"),
            "branch": self.branch,
        }
        if sha:
            payload["sha"] = sha

        response = await self._client.put(url, json=payload)
        raise_for_transient_status(response, "GitHub")
        if response.status_code not in (200, 201):
            raise SinkError(f"GitHub upload failed: {response.status_code} {response.text[:200]}")

        data = response.json()
        if not isinstance(data, dict):
            data = {}
        commit_sha = (data.get("commit") or {}).get("sha")
        html_url = (data.get("content") or {}).get("html_url")
        logger.info(f"Committed {repo_path} to {self.owner}/{self.repo}@{self.branch} ({commit_sha})")
        return ArchiveReceipt(reference=commit_sha or repo_path, url=html_url, name=repo_path)
