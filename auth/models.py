from __future__ import annotations

from dataclasses import dataclass


@dataclass
class PendingOAuthState:
    state: str
    code_verifier: str
    created_at: float


@dataclass
class AuthorizationRequest:
    url: str
    authorize_url: str
    client_id: str
    redirect_uri: str
    state: str
    code_challenge: str
    code_challenge_method: str = "S256"
