class RegistryError(Exception):
    """Base error of registry requests made by a digest resolver"""


class AuthError(RegistryError):
    """Raise this error if the token endpoint does not respond 200"""

    def __init__(self, body: str, status: int) -> None:
        super().__init__(body)
        self.body = body
        self.status = status


class ManifestError(RegistryError):
    def __init__(self, url: str, status: str, www_authenticate: str) -> None:
        super().__init__(
            f'registry responded to head request to {url} with "{status}", '
            f'auth: "{www_authenticate}"'
        )
        self.url = url
        self.status = status
        self.www_authenticate = www_authenticate


class TokenDecodeError(RegistryError, ValueError):
    """Raise this error if the token endpoint responds malformed JSON"""


class Cancelled(Exception):
    pass


class DeadlineExceeded(Cancelled):
    pass
