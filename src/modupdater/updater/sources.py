from __future__ import annotations

import fnmatch
import logging
from dataclasses import replace
from typing import Any

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from modupdater.common.config import RuntimeConfig
from modupdater.common.errors import NetworkError, ParseError
from modupdater.common.hashing import sha256_text
from modupdater.common.manifest import changed_entries, diff_manifests, parse_manifest_text
from modupdater.common.types import (
    Manifest,
    ManifestState,
    ModDescriptor,
    ModDownload,
    ModularSource,
    ReleaseAssetSource,
)
from modupdater.common.url_policy import join_url, validate_update_url


log = logging.getLogger(__name__)


def build_session(runtime: RuntimeConfig) -> requests.Session:
    session = requests.Session()
    retry = Retry(
        total=runtime.max_retries,
        connect=runtime.max_retries,
        read=runtime.max_retries,
        status=runtime.max_retries,
        backoff_factor=0.5,
        status_forcelist=(429, 500, 502, 503, 504),
        allowed_methods=frozenset({"GET", "HEAD"}),
        raise_on_status=False,
    )
    adapter = HTTPAdapter(max_retries=retry)
    session.mount("http://", adapter)
    session.mount("https://", adapter)
    session.headers["User-Agent"] = runtime.user_agent
    return session


def http_get(session: requests.Session, url: str, runtime: RuntimeConfig, **kwargs: Any) -> requests.Response:
    try:
        resp = session.get(url, timeout=runtime.timeout, **kwargs)
        resp.raise_for_status()
    except requests.HTTPError as exc:
        status = exc.response.status_code if exc.response is not None else "?"
        raise NetworkError(f"HTTP {status} from {url}") from exc
    except requests.RequestException as exc:
        raise NetworkError(f"Request to {url} failed: {exc}") from exc
    return resp


class GitHubReleaseSource:
    """Finds the newest published release carrying the mod's asset."""

    def __init__(self, session: requests.Session, runtime: RuntimeConfig):
        self.session = session
        self.runtime = runtime

    def releases_url(self, repo: str) -> str:
        return f"{self.runtime.github_api_url.rstrip('/')}/repos/{repo.strip().strip('/')}/releases"

    def fetch_releases(self, repo: str) -> list[dict]:
        url = self.releases_url(repo)
        validate_update_url(url, allow_http=self.runtime.allow_insecure_http)
        headers = {"Accept": "application/vnd.github+json"}
        if self.runtime.github_token:
            headers["Authorization"] = f"Bearer {self.runtime.github_token}"
        log.debug("Fetching releases from %s", url)
        resp = http_get(self.session, url, self.runtime, headers=headers)
        try:
            data = resp.json()
        except ValueError as exc:
            raise ParseError(f"Release listing for {repo} is not valid JSON") from exc
        if not isinstance(data, list):
            raise ParseError(f"Release listing for {repo} is not a list")
        return data

    @staticmethod
    def _match_asset(release: dict, pattern: str) -> dict | None:
        assets = release.get("assets")
        if not isinstance(assets, list):
            raise ParseError(f"Release {release.get('tag_name')!r} has no asset list")
        wanted = pattern.strip().lower()
        for asset in assets:
            if not isinstance(asset, dict):
                raise ParseError(f"Release {release.get('tag_name')!r} has a malformed asset entry")
            name = str(asset.get("name", ""))
            if fnmatch.fnmatchcase(name.lower(), wanted):
                return asset
        return None

    def select_release(self, releases: list[dict], pattern: str) -> tuple[dict, dict] | None:
        for release in releases:
            if not isinstance(release, dict):
                raise ParseError("Release listing contains a non-object entry")
            if release.get("draft"):
                continue
            asset = self._match_asset(release, pattern)
            if asset is not None:
                return release, asset
        return None

    def check(self, mod: ModDescriptor, source: ReleaseAssetSource, force: bool = False) -> ModDownload | None:
        releases = self.fetch_releases(source.repo)
        selected = self.select_release(releases, source.asset)
        if selected is None:
            log.info("No release of %s carries an asset matching %r", source.repo, source.asset)
            return None
        release, asset = selected

        tag = str(release.get("tag_name") or "").strip()
        if not tag:
            raise ParseError(f"Newest release of {source.repo} has no tag")
        download_url = str(asset.get("browser_download_url") or "").strip()
        if not download_url:
            raise ParseError(f"Asset {asset.get('name')!r} of {source.repo} {tag} has no download URL")
        validate_update_url(download_url, allow_http=self.runtime.allow_insecure_http)

        current = mod.version.strip()
        if not force and tag == current:
            log.debug("%s is current at %s", mod.display_name, tag)
            return None

        try:
            size = int(asset.get("size") or 0)
        except (TypeError, ValueError):
            raise ParseError(f"Asset {asset.get('name')!r} has an invalid size") from None

        log.info("Update for %s: %s -> %s", mod.display_name, current or "none", tag)
        return ModDownload(
            key=mod.key,
            name=mod.display_name,
            kind="release",
            version=tag,
            urls=(download_url,),
            size=size,
            current_version=current,
            release_notes=str(release.get("body") or ""),
            published_at=str(release.get("published_at") or ""),
            page_url=str(release.get("html_url") or ""),
        )


class ModularManifestSource:
    """Diffs a remotely published manifest against the mod's local reference manifest."""

    def __init__(self, session: requests.Session, runtime: RuntimeConfig):
        self.session = session
        self.runtime = runtime

    def fetch_manifest(self, base_url: str) -> tuple[Manifest, str]:
        url = join_url(base_url, self.runtime.manifest_file_name)
        validate_update_url(url, allow_http=self.runtime.allow_insecure_http)
        log.debug("Fetching manifest from %s", url)
        resp = http_get(self.session, url, self.runtime)
        text = resp.text
        return parse_manifest_text(text, source=url), text

    def check(
        self,
        mod: ModDescriptor,
        source: ModularSource,
        reference: Manifest,
        force: bool = False,
    ) -> ModDownload | None:
        remote, text = self.fetch_manifest(source.base_url)
        diff = diff_manifests(reference, remote)
        if force:
            # Fetch every remote file; removals still apply.
            files = [d if d.state is not ManifestState.UNCHANGED else replace(d, state=ManifestState.MODIFIED) for d in diff]
        else:
            files = changed_entries(diff)
        if not files:
            log.debug("%s matches its remote manifest", mod.display_name)
            return None

        urls = tuple(join_url(source.base_url, f.path) for f in files if f.needs_download)
        size = sum(f.reference.size for f in files if f.needs_download and f.reference is not None)
        log.info(
            "Update for %s: %d file(s) to fetch, %d to remove",
            mod.display_name,
            len(urls),
            sum(1 for f in files if f.state is ManifestState.REMOVED),
        )
        return ModDownload(
            key=mod.key,
            name=mod.display_name,
            kind="modular",
            version=sha256_text(text)[:12],
            urls=urls,
            files=tuple(files),
            manifest=remote,
            size=size,
            current_version=mod.version,
            page_url=source.base_url,
        )
