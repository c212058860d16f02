"""HTTP clients for source control, the image registry and the external CI service."""

import asyncio
import logging
import time
from typing import Any
from urllib.parse import quote

import requests
from azure.identity import DefaultAzureCredential

logger = logging.getLogger(__name__)

HTTP_NOT_FOUND = 404
HTTP_OK = 200
REQUEST_TIMEOUT = 30
ARM_SCOPE = "https://management.azure.com/.default"
MANIFEST_MEDIA_TYPES = ", ".join(
    [
        "application/vnd.docker.distribution.manifest.v2+json",
        "application/vnd.docker.distribution.manifest.list.v2+json",
        "application/vnd.oci.image.manifest.v1+json",
        "application/vnd.oci.image.index.v1+json",
    ]
)


class GitHubClient:
    """Commit lookups against the GitHub REST API."""

    def __init__(self, api_url: str, token: str = "") -> None:
        self.api_url = api_url.rstrip("/")
        self.token = token

    def _headers(self) -> dict[str, str]:
        headers = {"Accept": "application/vnd.github+json"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def get_sha_for_branch(self, branch: str, owner: str, repo: str) -> str | None:
        """Latest commit SHA of a branch, or None if the branch does not exist.

        Raises:
            requests.HTTPError: For errors other than 404
        """
        url = f"{self.api_url}/repos/{owner}/{repo}/branches/{quote(branch, safe='')}"
        response = requests.get(url, headers=self._headers(), timeout=REQUEST_TIMEOUT)
        if response.status_code == HTTP_NOT_FOUND:
            logger.warning(f"Branch {owner}/{repo}/{branch} not found")
            return None
        response.raise_for_status()
        return response.json().get("commit", {}).get("sha")

    def get_auth_token(self) -> str:
        return self.token


class RegistryClient:
    """Tag lookups against a Docker registry v2 API."""

    def __init__(self, registry_domain: str, credential: Any | None = None) -> None:
        self.registry_domain = registry_domain
        self._credential = credential

    @property
    def is_acr(self) -> bool:
        return self.registry_domain.endswith(".azurecr.io")

    def _acr_access_token(self, repository: str) -> str:
        """Exchange an AAD token for a repository-scoped ACR access token."""
        credential = self._credential or DefaultAzureCredential()
        aad_token = credential.get_token(ARM_SCOPE).token

        exchange = requests.post(
            f"https://{self.registry_domain}/oauth2/exchange",
            data={
                "grant_type": "access_token",
                "service": self.registry_domain,
                "access_token": aad_token,
            },
            timeout=REQUEST_TIMEOUT,
        )
        exchange.raise_for_status()

        token = requests.post(
            f"https://{self.registry_domain}/oauth2/token",
            data={
                "grant_type": "refresh_token",
                "service": self.registry_domain,
                "scope": f"repository:{repository}:pull",
                "refresh_token": exchange.json()["refresh_token"],
            },
            timeout=REQUEST_TIMEOUT,
        )
        token.raise_for_status()
        return token.json()["access_token"]

    def tag_exists(self, tag: str, repository: str) -> bool:
        """Whether ``repository:tag`` is present in the registry.

        Lookup failures are logged and reported as a missing tag so the image gets built.
        """
        headers = {"Accept": MANIFEST_MEDIA_TYPES}
        try:
            if self.is_acr:
                headers["Authorization"] = f"Bearer {self._acr_access_token(repository)}"
            response = requests.head(
                f"https://{self.registry_domain}/v2/{repository}/manifests/{tag}",
                headers=headers,
                timeout=REQUEST_TIMEOUT,
            )
        except (requests.RequestException, KeyError) as e:
            logger.warning(
                f"Tag lookup failed for {repository}:{tag}: {e}",
                extra={"registry": self.registry_domain, "error_type": type(e).__name__},
            )
            return False

        if response.status_code == HTTP_OK:
            return True
        if response.status_code != HTTP_NOT_FOUND:
            logger.warning(
                f"Unexpected status {response.status_code} checking {repository}:{tag}",
                extra={"registry": self.registry_domain},
            )
        return False


class CodefreshClient:
    """Pipeline runs on the external CI service."""

    TERMINAL_FAILURES = ("error", "terminated", "denied")

    def __init__(
        self,
        api_url: str,
        api_key: str,
        poll_interval: float = 10.0,
        timeout: float = 3600.0,
    ) -> None:
        self.api_url = api_url.rstrip("/")
        self.api_key = api_key
        self.poll_interval = poll_interval
        self.timeout = timeout

    def _headers(self) -> dict[str, str]:
        return {"Authorization": self.api_key, "Content-Type": "application/json"}

    @staticmethod
    def build_url(run_id: str) -> str:
        return f"https://g.codefresh.io/build/{run_id}"

    def trigger(self, pipeline_id: str, branch: str, variables: dict[str, Any]) -> str:
        """Start a pipeline run and return its id."""
        response = requests.post(
            f"{self.api_url}/pipelines/run/{quote(pipeline_id, safe='')}",
            json={"branch": branch, "variables": {k: str(v) for k, v in variables.items()}},
            headers=self._headers(),
            timeout=REQUEST_TIMEOUT,
        )
        response.raise_for_status()
        run_id = response.text.strip().strip('"')
        logger.info(f"Triggered pipeline {pipeline_id} run {run_id}")
        return run_id

    def get_status(self, run_id: str) -> str:
        response = requests.get(
            f"{self.api_url}/builds/{run_id}", headers=self._headers(), timeout=REQUEST_TIMEOUT
        )
        response.raise_for_status()
        return response.json().get("status", "")

    async def wait_for_completion(self, run_id: str) -> bool:
        """Poll a run until it reaches a terminal status.

        Returns:
            True on success, False on failure or timeout
        """
        start_time = time.monotonic()
        while True:
            status = await asyncio.to_thread(self.get_status, run_id)
            if status == "success":
                return True
            if status in self.TERMINAL_FAILURES:
                logger.warning(f"Pipeline run {run_id} finished with status {status}")
                return False
            if time.monotonic() - start_time >= self.timeout:
                logger.warning(f"Pipeline run {run_id} did not finish within {self.timeout}s")
                return False
            await asyncio.sleep(self.poll_interval)

    def get_logs(self, run_id: str) -> str:
        response = requests.get(
            f"{self.api_url}/builds/{run_id}/logs", headers=self._headers(), timeout=REQUEST_TIMEOUT
        )
        response.raise_for_status()
        return response.text
