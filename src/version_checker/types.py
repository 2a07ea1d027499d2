from typing import NotRequired
from typing import TypedDict


class AuthResponseT(TypedDict):
    token: str
    access_token: NotRequired[str]
    expires_in: NotRequired[int]
    issued_at: NotRequired[str]


LabelsT = dict[str, str]
