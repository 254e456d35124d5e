"""Request bodies accepted from the browser extension.

Every field is optional at the schema level so that missing values come
back as the domain's own 400/401 error bodies instead of a 422.
"""

from __future__ import annotations

import datetime

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from session_bridge.models import UserCredentials


class CredentialsBody(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    platform: str | None = None
    user_email: str | None = Field(default=None, validation_alias=AliasChoices("userEmail", "user_email"))
    user_password: str | None = Field(
        default=None,
        repr=False,
        validation_alias=AliasChoices("userPassword", "user_password"),
    )

    def credentials(self) -> UserCredentials | None:
        if not self.user_email or not self.user_password:
            return None
        return UserCredentials(email=self.user_email, password=self.user_password)


class SessionSubmission(CredentialsBody):
    """A captured cookie. Older extension builds send ``sessionKey``/``sessionValue``/``url``."""

    cookie_name: str | None = Field(
        default=None, validation_alias=AliasChoices("cookieName", "sessionKey", "cookie_name")
    )
    cookie_value: str | None = Field(
        default=None,
        repr=False,
        validation_alias=AliasChoices("cookieValue", "sessionValue", "cookie_value"),
    )
    extracted_at: datetime.datetime | None = Field(
        default=None, validation_alias=AliasChoices("extractedAt", "extracted_at")
    )
    source_url: str | None = Field(default=None, validation_alias=AliasChoices("sourceUrl", "url", "source_url"))
