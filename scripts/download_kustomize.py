#!/usr/bin/env python

from packaging.version import InvalidVersion, Version
from urllib.parse import unquote, urlparse
import argparse
import os
import re
import sys
import requests

RELEASES_URL = "https://api.github.com/repos/kubernetes-sigs/kustomize/releases"
DEFAULT_PLATFORM = "linux_amd64"

VERSIONED_PATH = re.compile(r"/kustomize(?:/|%2F)v", re.IGNORECASE)
ASSET_VERSION = re.compile(r"kustomize_v(?P<version>[^_/]+)_")


class DownloadError(Exception):
    pass


def fetch_releases(api_url=RELEASES_URL, timeout=30):
    try:
        resp = requests.get(
            api_url,
            headers={"Accept": "application/vnd.github+json"},
            timeout=(5, timeout),
        )
        resp.raise_for_status()
        releases = resp.json()
    except requests.RequestException as e:
        raise DownloadError(f"could not fetch release metadata from {api_url}: {e}") from e
    except ValueError as e:
        raise DownloadError(f"release metadata from {api_url} is not JSON: {e}") from e
    if not isinstance(releases, list):
        raise DownloadError(f"unexpected release metadata from {api_url}: {str(releases)[:200]}")
    return releases


def asset_urls(releases, platform=DEFAULT_PLATFORM):
    urls = []
    for release in releases:
        for asset in release.get("assets", []):
            url = asset.get("browser_download_url", "")
            if platform in url and VERSIONED_PATH.search(url):
                urls.append(url)
    return urls


def asset_version(url):
    match = ASSET_VERSION.search(unquote(url).rsplit("/", 1)[-1])
    return match.group("version") if match else None


def select_latest(urls, ordering="semver"):
    """Pick the newest asset URL.

    "semver" compares parsed release versions, so v1.10.0 beats v1.9.0.
    "lexical" keeps the old plain string sort, where v1.9.0 wins instead.
    """
    if ordering == "lexical":
        candidates = sorted(urls)
    elif ordering == "semver":
        versioned = []
        for url in urls:
            try:
                versioned.append((Version(asset_version(url) or ""), url))
            except InvalidVersion:
                continue
        candidates = [url for _, url in sorted(versioned)]
    else:
        raise ValueError(f"unknown ordering: {ordering}")

    if not candidates:
        raise DownloadError("no matching kustomize release assets found")
    return candidates[-1]


def download(url, dest_dir=".", timeout=300):
    file_name = os.path.basename(urlparse(url).path)
    file_path = os.path.join(dest_dir, file_name)
    try:
        with requests.get(url, stream=True, timeout=(5, timeout)) as resp:
            resp.raise_for_status()
            with open(file_path, "wb") as f:
                for chunk in resp.iter_content(chunk_size=65536):
                    f.write(chunk)
    except (requests.RequestException, OSError) as e:
        if os.path.exists(file_path):
            os.remove(file_path)
        raise DownloadError(f"could not download {url}: {e}") from e
    return file_path


def main(argv=None):
    parser = argparse.ArgumentParser(description="Download the most recently released kustomize binary.")
    parser.add_argument("--api-url", default=RELEASES_URL, help="Release listing endpoint.")
    parser.add_argument("--platform", default=DEFAULT_PLATFORM, help="Asset platform suffix, e.g. linux_amd64.")
    parser.add_argument("--ordering", choices=["semver", "lexical"], default="semver",
                        help="How to decide which release is newest (default: semver).")
    parser.add_argument("--dest", default=".", help="Directory to download into.")
    parser.add_argument("--timeout", type=float, default=30, help="HTTP read timeout in seconds for the metadata fetch and the download.")
    args = parser.parse_args(argv)

    try:
        releases = fetch_releases(args.api_url, timeout=args.timeout)
        url = select_latest(asset_urls(releases, args.platform), args.ordering)
        print(f"Downloading {url}")
        file_path = download(url, args.dest, timeout=args.timeout)
    except DownloadError as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1
    print(f"Saved {file_path}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
