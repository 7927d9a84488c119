"""Federated (OIDC) authentication for CI pipelines.

Exchanges the ID token a GitHub Actions run can request for a short-lived
Google access token:

1. Identity check: GITHUB_REPOSITORY must equal the configured repository
2. ID token request from the runner (audience = workload identity provider)
3. Claim check: the trust attribute in the token must match exactly
4. STS token exchange (federated token)
5. IAM Credentials generateAccessToken (service account impersonation)

Steps 1-3 make no cloud call, so an identity mismatch fails before anything
remote is touched. Nothing here retries; every failure is an AuthError.
"""

import base64
import json
import logging
import os
from dataclasses import dataclass
from typing import Mapping, Optional

import requests

logger = logging.getLogger(__name__)

STS_URL = 'https://sts.googleapis.com/v1/token'
IAM_CREDENTIALS_URL = 'https://iamcredentials.googleapis.com/v1/projects/-/serviceAccounts/{sa}:generateAccessToken'
CLOUD_PLATFORM_SCOPE = 'https://www.googleapis.com/auth/cloud-platform'
TOKEN_EXCHANGE_GRANT = 'urn:ietf:params:oauth:grant-type:token-exchange'
ACCESS_TOKEN_TYPE = 'urn:ietf:params:oauth:token-type:access_token'
JWT_TOKEN_TYPE = 'urn:ietf:params:oauth:token-type:jwt'
GITHUB_ISSUER = 'https://token.actions.githubusercontent.com'

REQUEST_TIMEOUT = 30


class AuthError(Exception):
    """Authentication error with error code."""

    def __init__(self, code: str, message: str):
        self.code = code
        self.message = message
        super().__init__(f"{code}: {message}")


@dataclass
class Credential:
    """Short-lived access token for the impersonated service account."""
    access_token: str
    expire_time: str
    service_account: str


def provider_audience(provider: str) -> str:
    """Audience string the provider expects in the ID token."""
    return f"//iam.googleapis.com/{provider.strip('/')}"


def parse_provider(provider: str) -> dict:
    """Split a provider resource path into its components.

    Expected: projects/{number}/locations/global/workloadIdentityPools/{pool}/providers/{id}

    Raises:
        AuthError: If the path does not have that shape
    """
    parts = provider.strip('/').split('/')
    if (len(parts) != 8 or parts[0] != 'projects' or parts[2] != 'locations'
            or parts[4] != 'workloadIdentityPools' or parts[6] != 'providers'):
        raise AuthError(
            "E400",
            f"Invalid workload identity provider '{provider}'. Expected "
            f"projects/<number>/locations/global/workloadIdentityPools/<pool>/providers/<provider>"
        )
    return {
        'project_number': parts[1],
        'location': parts[3],
        'pool': parts[5],
        'provider': parts[7],
    }


def _base64url_decode(s: str) -> bytes:
    """Decode base64url string (padding-free)."""
    s += '=' * (4 - len(s) % 4) if len(s) % 4 else ''
    return base64.urlsafe_b64decode(s)


def decode_claims(token: str) -> dict:
    """Decode the payload of a JWT without verifying it.

    Signature verification is STS's job; the claims are only read to fail
    early on an identity mismatch.

    Raises:
        AuthError: If the token is not a three-segment JWT with a JSON payload
    """
    parts = token.split('.')
    if len(parts) != 3:
        raise AuthError("E400", f"Malformed ID token: expected 3 dot-separated segments, got {len(parts)}")
    try:
        claims = json.loads(_base64url_decode(parts[1]))
    except Exception:
        raise AuthError("E400", "Malformed ID token: invalid payload encoding")
    if not isinstance(claims, dict):
        raise AuthError("E400", "Malformed ID token: payload is not an object")
    return claims


def check_trust_attribute(claims: Mapping, attribute: str, expected: str) -> None:
    """Require claims[attribute] == expected (exact match).

    Raises:
        AuthError: E401 on mismatch or missing claim
    """
    actual = claims.get(attribute)
    if actual != expected:
        raise AuthError(
            "E401",
            f"Identity mismatch: token {attribute}={actual!r}, trust binding expects {expected!r}"
        )


def request_id_token(audience: str, environ: Mapping[str, str]) -> str:
    """Request an OIDC ID token from the GitHub Actions runner.

    Raises:
        AuthError: If the run lacks id-token permission or the request fails
    """
    url = environ.get('ACTIONS_ID_TOKEN_REQUEST_URL')
    bearer = environ.get('ACTIONS_ID_TOKEN_REQUEST_TOKEN')
    if not url or not bearer:
        raise AuthError(
            "E401",
            "No OIDC token available: ACTIONS_ID_TOKEN_REQUEST_URL/TOKEN not set. "
            "The workflow needs 'permissions: id-token: write'"
        )

    try:
        resp = requests.get(
            url,
            params={'audience': audience},
            headers={'Authorization': f'Bearer {bearer}'},
            timeout=REQUEST_TIMEOUT,
        )
    except requests.exceptions.RequestException as e:
        raise AuthError("E503", f"Cannot reach OIDC token endpoint: {e}")

    if resp.status_code != 200:
        raise AuthError("E403", f"OIDC token request rejected ({resp.status_code}): {resp.text[:200]}")

    try:
        data = resp.json() or {}
    except ValueError:
        raise AuthError("E400", "OIDC token response is not JSON")
    token = data.get('value')
    if not token:
        raise AuthError("E400", "OIDC token response has no 'value'")
    return str(token)


def exchange_token(subject_token: str, provider: str) -> str:
    """Exchange an ID token for a federated access token at Google STS.

    Raises:
        AuthError: E403 when the provider rejects the token (attribute condition)
    """
    body = {
        'audience': provider_audience(provider),
        'grantType': TOKEN_EXCHANGE_GRANT,
        'requestedTokenType': ACCESS_TOKEN_TYPE,
        'scope': CLOUD_PLATFORM_SCOPE,
        'subjectTokenType': JWT_TOKEN_TYPE,
        'subjectToken': subject_token,
    }
    try:
        resp = requests.post(STS_URL, json=body, timeout=REQUEST_TIMEOUT)
    except requests.exceptions.RequestException as e:
        raise AuthError("E503", f"Cannot reach STS: {e}")

    if resp.status_code != 200:
        raise AuthError(
            "E403",
            f"STS token exchange rejected ({resp.status_code}): {resp.text[:200]}\n"
            f"  Check the provider's attribute condition matches this repository"
        )

    try:
        data = resp.json() or {}
    except ValueError:
        raise AuthError("E400", "STS response is not JSON")
    token = data.get('access_token')
    if not token:
        raise AuthError("E400", "STS response has no access_token")
    return str(token)


def impersonate(federated_token: str, service_account: str, lifetime: int = 3600) -> Credential:
    """Generate an access token for service_account using the federated token.

    Raises:
        AuthError: E403 when the principal lacks workloadIdentityUser
    """
    url = IAM_CREDENTIALS_URL.format(sa=service_account)
    try:
        resp = requests.post(
            url,
            json={'scope': [CLOUD_PLATFORM_SCOPE], 'lifetime': f'{lifetime}s'},
            headers={'Authorization': f'Bearer {federated_token}'},
            timeout=REQUEST_TIMEOUT,
        )
    except requests.exceptions.RequestException as e:
        raise AuthError("E503", f"Cannot reach IAM Credentials: {e}")

    if resp.status_code != 200:
        raise AuthError(
            "E403",
            f"Impersonation of {service_account} rejected ({resp.status_code}): {resp.text[:200]}\n"
            f"  Check roles/iam.workloadIdentityUser is bound for this repository"
        )

    try:
        data = resp.json() or {}
    except ValueError:
        raise AuthError("E400", "generateAccessToken response is not JSON")
    if not data.get('accessToken'):
        raise AuthError("E400", "generateAccessToken response has no accessToken")
    return Credential(
        access_token=data['accessToken'],
        expire_time=data.get('expireTime', ''),
        service_account=service_account,
    )


def authenticate(
    provider: str,
    service_account: str,
    repository: str,
    attribute: str = 'repository',
    environ: Optional[Mapping[str, str]] = None,
) -> Credential:
    """Run the full federated exchange for a CI run.

    Args:
        provider: Workload identity provider resource path
        service_account: Service account email to impersonate
        repository: Repository (owner/repo) the trust binding admits
        attribute: Token claim the binding checks
        environ: Process environment (defaults to os.environ)

    Returns:
        Credential for the service account

    Raises:
        AuthError: On any failure; never retried
    """
    environ = os.environ if environ is None else environ
    parse_provider(provider)

    calling_repo = environ.get('GITHUB_REPOSITORY', '')
    if calling_repo != repository:
        raise AuthError(
            "E401",
            f"Repository identity mismatch: running from {calling_repo or '(unset)'!r}, "
            f"trust binding expects {repository!r}"
        )

    id_token = request_id_token(provider_audience(provider), environ)
    claims = decode_claims(id_token)
    if claims.get('iss') and claims['iss'] != GITHUB_ISSUER:
        raise AuthError("E401", f"Unexpected token issuer: {claims['iss']}")
    check_trust_attribute(claims, attribute, repository)
    logger.info(f"OIDC identity {attribute}={repository} accepted locally, exchanging token")

    federated = exchange_token(id_token, provider)
    credential = impersonate(federated, service_account)
    logger.info(f"Impersonating {service_account} (expires {credential.expire_time or 'unknown'})")
    return credential
