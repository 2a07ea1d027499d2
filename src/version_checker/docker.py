import logging
import os
import urllib.parse
from dataclasses import dataclass
from typing import Final

import requests
from requests.auth import HTTPBasicAuth

from version_checker.cancellation import CancellationToken
from version_checker.exceptions import AuthError, ManifestError, TokenDecodeError
from version_checker.transport import DEFAULT_TIMEOUT, HTTPTransport
from version_checker.types import AuthResponseT

TOKEN_URL: Final = "https://auth.docker.io/token"
TOKEN_SERVICE: Final = "registry.docker.io"
MANIFEST_URL: Final = "https://registry.hub.docker.com/v2/{repository}/{image}/manifests/{tag}"

MEDIA_TYPE_DOCKER_MANIFEST_V2: Final = "application/vnd.docker.distribution.manifest.v2+json"
MEDIA_TYPE_DOCKER_MANIFEST_LIST_V2: Final = (
    "application/vnd.docker.distribution.manifest.list.v2+json"
)
MEDIA_TYPE_DOCKER_MANIFEST_V1: Final = "application/vnd.docker.distribution.manifest.v1+json"

MANIFEST_ACCEPT: Final = ", ".join(
    [
        MEDIA_TYPE_DOCKER_MANIFEST_V2,
        MEDIA_TYPE_DOCKER_MANIFEST_LIST_V2,
        MEDIA_TYPE_DOCKER_MANIFEST_V1,
    ]
)

HEADER_CONTENT_DIGEST: Final = "Docker-Content-Digest"
HEADER_WWW_AUTHENTICATE: Final = "www-authenticate"

ENV_USERNAME: Final = "VERSION_CHECKER_DOCKER_USERNAME"
ENV_PASSWORD: Final = "VERSION_CHECKER_DOCKER_PASSWORD"

logger = logging.getLogger("docker")


@dataclass
class Options:
    username: str = ""
    password: str = ""
    timeout: float = DEFAULT_TIMEOUT

    @classmethod
    def from_env(cls) -> "Options":
        return cls(
            username=os.environ.get(ENV_USERNAME, ""),
            password=os.environ.get(ENV_PASSWORD, ""),
        )

    @property
    def has_credentials(self) -> bool:
        return bool(self.username and self.password)


def auth_scope(repository: str, image: str) -> str:
    return f"repository:{repository}/{image}:pull"


def auth_url(repository: str, image: str) -> str:
    query = urllib.parse.urlencode(
        {"service": TOKEN_SERVICE, "scope": auth_scope(repository, image)}
    )
    return f"{TOKEN_URL}?{query}"


def _check_reference(repository: str, image: str, tag: str | None = None) -> None:
    if not repository:
        raise ValueError("Repository is empty.")
    if not image:
        raise ValueError("Image is empty.")
    if tag is not None and not tag:
        raise ValueError("Tag is empty.")


class ManifestClient:
    """Resolve the digest Docker Hub serves for an image tag

    Nothing is kept between calls. Every :meth:`digest` call requests a new bearer
    token, so concurrent calls are independent of each other.
    """

    def __init__(
        self, options: Options | None = None, transport: HTTPTransport | None = None
    ) -> None:
        self.options = options or Options()
        self.transport = transport or HTTPTransport(timeout=self.options.timeout)

    def get_auth_token(self, cancel: CancellationToken, repository: str, image: str) -> str:
        """Get a bearer token allowed to pull the given repository image

        :param cancel: cancellation token observed by the request.
        :type cancel: CancellationToken
        :return: the token. It is empty if the endpoint responds JSON without a token.
        :raises AuthError: if the token endpoint does not respond 200.
        :raises TokenDecodeError: if the response body is not valid JSON.
        """
        _check_reference(repository, image)
        auth = None
        if self.options.has_credentials:
            auth = HTTPBasicAuth(self.options.username, self.options.password)
        resp = self.transport.request(cancel, "GET", auth_url(repository, image), auth=auth)
        if resp.status_code != 200:
            raise AuthError(resp.text, resp.status_code)
        try:
            data: AuthResponseT = resp.json()
        except requests.exceptions.JSONDecodeError as e:
            raise TokenDecodeError(f"Cannot decode token response: {e}") from e
        if not isinstance(data, dict):
            raise TokenDecodeError(f"Unexpected token response: {resp.text}")
        return data.get("token", "")

    def digest(self, cancel: CancellationToken, repository: str, image: str, tag: str) -> str:
        """Get the content digest of an image tag

        A HEAD request is sent to the manifest endpoint with all the supported manifest
        media types accepted, so the registry picks the format it stores for that tag.

        :param cancel: cancellation token observed by both token and manifest requests.
        :type cancel: CancellationToken
        :param repository: repository namespace, e.g. ``library``.
        :param image: image name.
        :param tag: image tag.
        :return: the digest from header Docker-Content-Digest. An empty string is returned
            if the registry does not include the header.
        :raises ManifestError: if the manifest endpoint does not respond 200.
        """
        _check_reference(repository, image, tag)
        token = self.get_auth_token(cancel, repository, image)

        url = MANIFEST_URL.format(repository=repository, image=image, tag=tag)
        headers = {
            "Authorization": f"Bearer {token}",
            "Accept": MANIFEST_ACCEPT,
        }
        logger.debug("Doing a HEAD request to fetch a digest: %s", url)
        resp = self.transport.request(cancel, "HEAD", url, headers=headers, allow_redirects=True)

        if resp.status_code != 200:
            www_authenticate = resp.headers.get(HEADER_WWW_AUTHENTICATE) or "not present"
            status = f"{resp.status_code} {resp.reason}".strip()
            raise ManifestError(url, status, www_authenticate)

        digest = resp.headers.get(HEADER_CONTENT_DIGEST, "")
        logger.debug("Retrieved digest %s for %s", digest, url)
        return digest
