#!/usr/bin/env python3
"""
gh-apptoken - mint short-lived GitHub App tokens from the command line

Signs a JWT with a GitHub App's private key, discovers the app's installations
and exchanges an installation id for an installation access token. Previously
issued installation tokens can be revoked.

NOTE:  This program is NOT supported or endorsed by GitHub.  Use at own risk.
"""

import argparse
import base64
import binascii
import http.client
import json
import os
import re
import signal
import sys
import tempfile
import time
import traceback
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, List, NamedTuple, NoReturn, Optional, Tuple, Union, cast
from urllib.error import HTTPError, URLError
from urllib.parse import urlsplit
from urllib.request import Request, urlopen

__version__ = "1.0.0"

# Constants
DEFAULT_HOSTNAME = "api.github.com"
PUBLIC_API_URL = "https://api.github.com"
DEFAULT_DURATION = 10
MIN_DURATION = 1
MAX_DURATION = 10
CLOCK_SKEW_SECONDS = 60
HTTP_TIMEOUT = 15
JWT_ALGORITHM = "RS256"
GITHUB_API_VERSION = "2022-11-28"
ACCEPT_HEADER = "application/vnd.github.v3+json"
DEFAULT_USER_AGENT = f"gh-apptoken/{__version__}"

INTEGER_PATTERN = re.compile(r'-?[0-9]+')

# (algorithm, JWT payload, path to PEM key) -> compact JWT
Signer = Callable[[str, Dict[str, Any], Path], str]


class TokenGenError(Exception):
    """Base class for errors reported to the user."""


class ValidationError(TokenGenError):
    """Raised when input validation fails."""


class DependencyError(TokenGenError):
    """
    Raised when the JWT signer or the GitHub API fails.

    Attributes:
        step: Workflow step that failed (signing, listing, creating, revoking)
        status: HTTP status code, when GitHub answered with an error
        cause: Underlying exception, when there is one
    """

    def __init__(
        self,
        step: str,
        message: str,
        status: Optional[int] = None,
        cause: Optional[BaseException] = None
    ) -> None:
        super().__init__(f"{step}: {message}")
        self.step: str = step
        self.status: Optional[int] = status
        self.cause: Optional[BaseException] = cause


class JwtClaims(NamedTuple):
    """Claim set of a GitHub App JWT."""

    issuer: str
    issued_at: int
    expires_at: int

    def as_payload(self) -> Dict[str, Union[int, str]]:
        return {'iat': self.issued_at, 'exp': self.expires_at, 'iss': self.issuer}


class RevokeResult(NamedTuple):
    """Outcome of a revoke request."""

    status_code: int
    revoked: bool
    message: str


def eprint(*args, **kwargs) -> None:
    """Print to stderr."""
    print(*args, file=sys.stderr, **kwargs)


def debug_print(message: str, debug: bool) -> None:
    """Print debug message to stderr if debug mode is enabled."""
    if debug:
        eprint(f"[DEBUG] {message}")


def fatal_error(message: str) -> NoReturn:
    """Print error message to stderr and exit with status 1."""
    eprint(f"Error: {message}")
    sys.exit(1)


def expand_path(path_str: str) -> Path:
    """Expand ~ and $HOME in path string."""
    return Path(path_str.replace('$HOME', str(Path.home()))).expanduser()


def mask_token(token: str) -> str:
    """Mask a token for safe display, showing only first and last few characters."""
    if len(token) <= 10:
        return "***"
    return f"{token[:7]}...{token[-4:]}"


def format_headers_for_display(headers: Dict[str, str]) -> str:
    """Format HTTP headers for display, masking the credential."""
    lines = []
    for key, value in headers.items():
        if key.lower() == 'authorization':
            scheme, _, credential = value.partition(' ')
            if credential:
                value = f"{scheme} {mask_token(credential)}"
        lines.append(f"  {key}: {value}")
    return "\n".join(lines)


# ---------------------------------------------------------------------------
# Input validation
# ---------------------------------------------------------------------------

def _require_integer(value: Any, field: str) -> int:
    """Check value against the integer pattern and return it as an int."""
    if value is None or value == '':
        raise ValidationError(f"{field} is required")

    text = str(value)
    if not INTEGER_PATTERN.fullmatch(text):
        raise ValidationError(
            f"{field} must be an integer: '{value}'\n"
            f"Example: 12345"
        )
    return int(text)


def validate_app_id(app_id: Any) -> str:
    """
    Validate a GitHub App id.

    Only the integer pattern is enforced, so a leading '-' is accepted.

    Returns:
        The app id as a string, ready to be used as the JWT issuer
    """
    _require_integer(app_id, "app_id")
    return str(app_id)


def validate_duration(duration: Any) -> int:
    """
    Validate the JWT lifetime in minutes.

    Raises:
        ValidationError: If duration is not an integer in [MIN_DURATION, MAX_DURATION]
    """
    minutes = _require_integer(duration, "duration")
    if minutes > MAX_DURATION:
        raise ValidationError(f"duration cannot be more than {MAX_DURATION} minutes")
    if minutes < MIN_DURATION:
        raise ValidationError(f"duration must be at least {MIN_DURATION} minute")
    return minutes


def validate_installation_id(installation_id: Any) -> Optional[int]:
    """Validate an optional installation id; None means discover it later."""
    if installation_id is None or installation_id == '':
        return None
    value = _require_integer(installation_id, "installation_id")
    if value <= 0:
        raise ValidationError(f"installation_id must be a positive integer: '{installation_id}'")
    return value


def validate_hostname(hostname: Optional[str]) -> str:
    """Validate the GitHub API hostname (no scheme, no path)."""
    if not hostname or not hostname.strip():
        raise ValidationError("hostname cannot be empty")
    invalid = ValidationError(
        f"Invalid hostname: '{hostname}'\n"
        f"Give a bare host name, e.g. api.github.com or github.example.com"
    )
    if any(char in hostname for char in '/?#@') or any(char.isspace() or not char.isprintable() for char in hostname):
        raise invalid

    try:
        parsed = urlsplit(f"https://{hostname}")
        # .port raises ValueError for a non-numeric or out of range port
        parsed.port
    except ValueError as e:
        raise invalid from e
    if not parsed.hostname:
        raise invalid
    return hostname


def validate_token(token: Optional[str]) -> str:
    if not token:
        raise ValidationError("token is required")
    return token


def validate_key_sources(key_path: Optional[str], base64_key: Optional[str]) -> None:
    """Ensure exactly one private key source was supplied."""
    if key_path and base64_key:
        raise ValidationError("key and base64_key are mutually exclusive")
    if not key_path and not base64_key:
        raise ValidationError("key or base64_key required")


def _looks_like_private_key(content: Union[str, bytes]) -> bool:
    if isinstance(content, bytes):
        return b'BEGIN' in content and b'PRIVATE KEY' in content
    return 'BEGIN' in content and 'PRIVATE KEY' in content


def validate_pem_file(pem_path: Path) -> Path:
    """
    Validate that the PEM file exists, is readable and holds a private key.

    Args:
        pem_path: Path to the PEM file

    Returns:
        The same path

    Raises:
        ValidationError: If validation fails
    """
    if not pem_path.exists():
        raise ValidationError(
            f"key: cannot find the PEM file at '{pem_path}'.\n"
            f"Please check that the path is correct and the file exists."
        )

    if not pem_path.is_file():
        raise ValidationError(
            f"key: the path '{pem_path}' exists but is not a file.\n"
            f"Please provide the path to a PEM file, not a directory."
        )

    try:
        content = pem_path.read_text()
    except PermissionError as e:
        raise ValidationError(
            f"key: permission denied when trying to read '{pem_path}'.\n"
            f"Please check that you have read permissions for this file."
        ) from e
    except (OSError, UnicodeDecodeError) as e:
        raise ValidationError(f"key: failed to read PEM file '{pem_path}': {e}") from e

    if not content.strip():
        raise ValidationError(f"key: the file '{pem_path}' is empty")

    if not _looks_like_private_key(content):
        raise ValidationError(
            f"key: the file '{pem_path}' does not appear to be a valid private key.\n"
            f"Expected to find 'BEGIN' and 'PRIVATE KEY' markers in the file."
        )

    return pem_path


# ---------------------------------------------------------------------------
# Key material
# ---------------------------------------------------------------------------

def decode_base64_key(base64_key: str) -> bytes:
    """
    Decode an inline base64 private key.

    Line breaks and surrounding whitespace are ignored, anything else outside
    the base64 alphabet is an error.

    Raises:
        ValidationError: If the blob is not base64 or not a PEM private key
    """
    compact = ''.join(base64_key.split())
    try:
        data = base64.b64decode(compact, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ValidationError(f"base64_key is not valid base64: {e}") from e

    if not data.strip():
        raise ValidationError("base64_key decoded to an empty key")
    if not _looks_like_private_key(data):
        raise ValidationError("base64_key does not decode to a PEM private key")
    return data


@contextmanager
def resolve_private_key(
    key_path: Optional[str] = None,
    base64_key: Optional[str] = None,
    debug: bool = False
) -> Iterator[Path]:
    """
    Yield a path to a readable PEM private key.

    A key path is checked and used as is; the caller keeps ownership of it.
    A base64 key is decoded into a private temporary file which is removed
    when the block exits, however it exits.

    Args:
        key_path: Path to a PEM file
        base64_key: Base64-encoded PEM content
        debug: Enable debug output

    Yields:
        Path to the PEM file
    """
    validate_key_sources(key_path, base64_key)

    if key_path:
        yield validate_pem_file(expand_path(key_path))
        return

    data = decode_base64_key(cast(str, base64_key))

    fd, name = tempfile.mkstemp(prefix='gh-apptoken-', suffix='.pem')
    pem_path = Path(name)
    try:
        with os.fdopen(fd, 'wb') as key_file:
            key_file.write(data)
        debug_print(f"Decoded base64 key into: {pem_path}", debug)
        yield pem_path
    finally:
        pem_path.unlink(missing_ok=True)
        debug_print(f"Removed temporary key file: {pem_path}", debug)


# ---------------------------------------------------------------------------
# JWT
# ---------------------------------------------------------------------------

def build_claims(app_id: Any, duration: Any, now: Optional[int] = None) -> JwtClaims:
    """
    Validate the inputs and compute the JWT claim set.

    issued_at is backdated by CLOCK_SKEW_SECONDS to tolerate clock drift
    between this host and GitHub.

    Args:
        app_id: GitHub App id
        duration: JWT lifetime in minutes
        now: Current unix time, defaults to time.time()

    Returns:
        JwtClaims for the app
    """
    issuer = validate_app_id(app_id)
    minutes = validate_duration(duration)
    current: int = int(time.time()) if now is None else int(now)
    return JwtClaims(
        issuer=issuer,
        issued_at=current - CLOCK_SKEW_SECONDS,
        expires_at=current + minutes * 60
    )


def pyjwt_signer(algorithm: str, payload: Dict[str, Any], key_path: Path) -> str:
    """
    Sign a JWT payload with the RSA key stored at key_path using PyJWT.

    Raises:
        DependencyError: If the libraries are missing or the key cannot be used
    """
    try:
        from cryptography.exceptions import UnsupportedAlgorithm
        from cryptography.hazmat.primitives import serialization
        from cryptography.hazmat.primitives.asymmetric import rsa
        import jwt as pyjwt
    except ImportError as e:
        raise DependencyError(
            'signing',
            "required dependencies not found, install with: pip install PyJWT cryptography",
            cause=e
        ) from e

    try:
        private_key = serialization.load_pem_private_key(key_path.read_bytes(), password=None)
    except (ValueError, TypeError, UnsupportedAlgorithm, OSError) as e:
        raise DependencyError('signing', f"could not load private key: {e}", cause=e) from e

    # GitHub Apps always use RSA keys.
    if not isinstance(private_key, rsa.RSAPrivateKey):
        raise DependencyError('signing', f"expected an RSA private key, got {type(private_key).__name__}")

    try:
        return pyjwt.encode(payload, private_key, algorithm=algorithm)
    except (pyjwt.PyJWTError, NotImplementedError, ValueError, TypeError) as e:
        raise DependencyError('signing', f"failed to generate JWT: {e}", cause=e) from e


def sign_jwt(claims: JwtClaims, pem_path: Path, signer: Signer, debug: bool = False) -> str:
    """Run the signer over the claims and check that it returned a token."""
    try:
        token = signer(JWT_ALGORITHM, claims.as_payload(), pem_path)
    except DependencyError:
        raise
    except Exception as e:
        raise DependencyError('signing', f"failed to generate JWT: {e}", cause=e) from e

    if not isinstance(token, str) or not token:
        raise DependencyError('signing', "signer returned an empty JWT")

    if debug:
        debug_print("JWT generated successfully", debug)
        debug_print(f"JWT issued at: {datetime.fromtimestamp(claims.issued_at, tz=timezone.utc)}", debug)
        debug_print(f"JWT expires at: {datetime.fromtimestamp(claims.expires_at, tz=timezone.utc)}", debug)
        debug_print(f"JWT: {mask_token(token)}", debug)

    return token


def create_app_jwt(
    app_id: Any,
    key_path: Optional[str] = None,
    base64_key: Optional[str] = None,
    duration: Any = DEFAULT_DURATION,
    signer: Signer = pyjwt_signer,
    debug: bool = False,
    now: Optional[int] = None
) -> Tuple[str, JwtClaims]:
    """
    Validate the inputs, materialize the key and sign an app JWT.

    Any temporary key file only lives for the signing call.

    Returns:
        Tuple of (JWT string, claims)
    """
    claims = build_claims(app_id, duration, now)
    validate_key_sources(key_path, base64_key)
    with resolve_private_key(key_path, base64_key, debug) as pem_path:
        jwt_token = sign_jwt(claims, pem_path, signer, debug)
    return jwt_token, claims


# ---------------------------------------------------------------------------
# GitHub API
# ---------------------------------------------------------------------------

def api_url_for_hostname(hostname: str) -> str:
    """Map a hostname to an API root; anything but api.github.com is GHES."""
    if hostname == DEFAULT_HOSTNAME:
        return PUBLIC_API_URL
    return f"https://{hostname}/api/v3"


def build_headers(authorization: str, user_agent: str = DEFAULT_USER_AGENT) -> Dict[str, str]:
    return {
        'Authorization': authorization,
        'Accept': ACCEPT_HEADER,
        'User-Agent': user_agent,
        'X-GitHub-Api-Version': GITHUB_API_VERSION
    }


def _send(
    method: str,
    url: str,
    headers: Dict[str, str],
    step: str,
    debug: bool
) -> Tuple[int, bytes]:
    """
    Send one request and return (status, body).

    HTTP error statuses are returned, not raised; the caller decides what they
    mean. Transport failures raise DependencyError.
    """
    debug_print(f"{method} {url}", debug)
    debug_print(f"Request headers:\n{format_headers_for_display(headers)}", debug)

    request = Request(url, headers=headers, method=method)
    try:
        with urlopen(request, timeout=HTTP_TIMEOUT) as response:
            status: int = response.status
            body: bytes = response.read()
    except HTTPError as e:
        status, body = e.code, e.read() or b''
    except URLError as e:
        raise DependencyError(step, f"failed to connect to GitHub API: {e.reason}", cause=e) from e
    except OSError as e:
        raise DependencyError(step, f"failed to connect to GitHub API: {e}", cause=e) from e
    except http.client.HTTPException as e:
        raise DependencyError(step, f"bad HTTP exchange with GitHub API: {e!r}", cause=e) from e

    debug_print(f"Response status: {status}", debug)
    return status, body


def _error_message(body: bytes) -> str:
    """Pull GitHub's 'message' out of an error body, falling back to the raw text."""
    text = body.decode('utf-8', errors='replace')
    try:
        data = json.loads(text)
    except ValueError:
        return text
    if isinstance(data, dict) and data.get('message'):
        return str(data['message'])
    return text


def _request_json(
    method: str,
    url: str,
    jwt_token: str,
    step: str,
    user_agent: str,
    debug: bool
) -> Any:
    headers = build_headers(f"Bearer {jwt_token}", user_agent)
    status, body = _send(method, url, headers, step, debug)

    if status >= 400:
        raise DependencyError(
            step,
            f"HTTP {status} error from GitHub API: {_error_message(body)}",
            status=status
        )

    try:
        return json.loads(body.decode('utf-8'))
    except ValueError as e:
        raise DependencyError(step, f"unparsable response from GitHub API: {e}", status=status, cause=e) from e


def list_installations(
    base_url: str,
    jwt_token: str,
    user_agent: str = DEFAULT_USER_AGENT,
    debug: bool = False
) -> List[Dict[str, Any]]:
    """
    List the installations of the authenticated app.

    Args:
        base_url: API root, see api_url_for_hostname()
        jwt_token: App JWT
        user_agent: User-Agent header value
        debug: Enable debug output

    Returns:
        The installations as returned by GitHub; may be empty
    """
    url = f"{base_url.rstrip('/')}/app/installations"
    data = _request_json('GET', url, jwt_token, 'listing', user_agent, debug)
    if not isinstance(data, list):
        raise DependencyError('listing', "unexpected response from GitHub API: expected a list of installations")
    debug_print(f"Found {len(data)} installation(s)", debug)
    return data


def create_installation_token(
    base_url: str,
    jwt_token: str,
    installation_id: int,
    user_agent: str = DEFAULT_USER_AGENT,
    debug: bool = False
) -> Dict[str, Any]:
    """
    Exchange the app JWT for an installation access token.

    Returns:
        Token data from GitHub API, guaranteed to carry a 'token'
    """
    url = f"{base_url.rstrip('/')}/app/installations/{installation_id}/access_tokens"
    data = _request_json('POST', url, jwt_token, 'creating', user_agent, debug)
    if not isinstance(data, dict) or not data.get('token'):
        raise DependencyError('creating', "failed to create app token")
    return data


def revoke_token(
    base_url: str,
    token: str,
    user_agent: str = DEFAULT_USER_AGENT,
    debug: bool = False
) -> int:
    """Ask GitHub to revoke an installation token and return the HTTP status."""
    url = f"{base_url.rstrip('/')}/installation/token"
    headers = build_headers(f"Token {token}", user_agent)
    status, _ = _send('DELETE', url, headers, 'revoking', debug)
    return status


# ---------------------------------------------------------------------------
# Workflows
# ---------------------------------------------------------------------------

def installations(
    app_id: Any,
    key_path: Optional[str] = None,
    base64_key: Optional[str] = None,
    duration: Any = DEFAULT_DURATION,
    hostname: str = DEFAULT_HOSTNAME,
    signer: Signer = pyjwt_signer,
    user_agent: str = DEFAULT_USER_AGENT,
    debug: bool = False,
    now: Optional[int] = None
) -> List[Dict[str, Any]]:
    """
    Sign an app JWT and list the app's installations.

    Returns:
        Raw installation objects from GitHub
    """
    base_url = api_url_for_hostname(validate_hostname(hostname))
    jwt_token, _ = create_app_jwt(app_id, key_path, base64_key, duration, signer, debug, now)
    return list_installations(base_url, jwt_token, user_agent, debug)


def _select_installation_id(found: List[Dict[str, Any]]) -> int:
    """Take the first installation's id."""
    if not found:
        raise DependencyError('listing', "failed to fetch installation id: the app has no installations")

    first = found[0]
    installation_id = first.get('id') if isinstance(first, dict) else None
    # bool is an int subclass
    if not isinstance(installation_id, int) or isinstance(installation_id, bool):
        raise DependencyError('listing', "failed to fetch installation id: installation has no numeric id")
    return installation_id


def generate(
    app_id: Any,
    key_path: Optional[str] = None,
    base64_key: Optional[str] = None,
    duration: Any = DEFAULT_DURATION,
    installation_id: Any = None,
    hostname: str = DEFAULT_HOSTNAME,
    signer: Signer = pyjwt_signer,
    user_agent: str = DEFAULT_USER_AGENT,
    debug: bool = False,
    now: Optional[int] = None
) -> Dict[str, Any]:
    """
    Mint an installation access token.

    When no installation id is given the first installation reported by
    GitHub is used.

    Args:
        app_id: GitHub App id
        key_path: Path to the app's PEM private key
        base64_key: Base64-encoded PEM private key, alternative to key_path
        duration: JWT lifetime in minutes, 1-10
        installation_id: Installation to mint a token for
        hostname: api.github.com or a GitHub Enterprise Server host
        signer: JWT signing capability
        user_agent: User-Agent header value
        debug: Enable debug output
        now: Current unix time, for tests

    Returns:
        {'token': ..., 'expires_at': ...}
    """
    selected: Optional[int] = validate_installation_id(installation_id)
    base_url = api_url_for_hostname(validate_hostname(hostname))
    jwt_token, _ = create_app_jwt(app_id, key_path, base64_key, duration, signer, debug, now)

    if selected is None:
        selected = _select_installation_id(list_installations(base_url, jwt_token, user_agent, debug))
        debug_print(f"Using installation id: {selected}", debug)

    token_data = create_installation_token(base_url, jwt_token, selected, user_agent, debug)
    return {'token': token_data['token'], 'expires_at': token_data.get('expires_at')}


def revoke(
    token: Optional[str],
    hostname: str = DEFAULT_HOSTNAME,
    user_agent: str = DEFAULT_USER_AGENT,
    debug: bool = False
) -> RevokeResult:
    """
    Revoke an installation token.

    A refusal from GitHub (e.g. the token already expired) is reported in the
    result rather than raised.
    """
    token = validate_token(token)
    base_url = api_url_for_hostname(validate_hostname(hostname))
    status = revoke_token(base_url, token, user_agent, debug)
    if status == 204:
        return RevokeResult(status, True, "Successfully revoked installation token.")
    return RevokeResult(status, False, f"Failed to revoke installation token; HTTP status code: {status}")


# ---------------------------------------------------------------------------
# Output
# ---------------------------------------------------------------------------

def format_expiration(expires_at: str, now: Optional[datetime] = None) -> str:
    """Render an ISO 8601 expiry as 'in N minutes (YYYY-MM-DD HH:MM:SS UTC)'."""
    try:
        exp_dt = datetime.fromisoformat(expires_at.replace('Z', '+00:00'))
    except (ValueError, AttributeError):
        return str(expires_at)
    if exp_dt.tzinfo is None:
        # GitHub sends UTC timestamps
        exp_dt = exp_dt.replace(tzinfo=timezone.utc)

    current = now or datetime.now(timezone.utc)
    minutes_left = int((exp_dt - current).total_seconds() / 60)
    formatted_time = exp_dt.astimezone(timezone.utc).strftime('%Y-%m-%d %H:%M:%S UTC')
    return f"in {minutes_left} minutes ({formatted_time})"


def output_jwt(jwt_token: str, claims: JwtClaims, output_format: str) -> None:
    """Print the JWT in the requested format."""
    if output_format == 'json':
        output: Dict[str, str] = {
            'jwt': jwt_token,
            'issued_at': datetime.fromtimestamp(claims.issued_at, tz=timezone.utc).isoformat(),
            'expires_at': datetime.fromtimestamp(claims.expires_at, tz=timezone.utc).isoformat()
        }
        print(json.dumps(output, indent=2))
    elif output_format == 'env':
        print(f"export GITHUB_JWT={jwt_token}")
    elif output_format == 'header':
        print(f"Authorization: Bearer {jwt_token}")
    else:
        print(jwt_token)


def output_token(token_data: Dict[str, Any], output_format: str) -> None:
    """Print the installation token in the requested format."""
    token: str = token_data.get('token', '')

    if output_format == 'json':
        print(json.dumps(token_data, indent=2))
    elif output_format == 'env':
        print(f"export GITHUB_TOKEN={token}")
    elif output_format == 'header':
        print(f"Authorization: token {token}")
    else:
        print(token)


def show_dry_run(method: str, url: str, headers: Dict[str, str]) -> None:
    eprint("\n[DRY RUN] Would make the following API request:")
    eprint(f"  URL: {url}")
    eprint(f"  Method: {method}")
    eprint("  Headers:")
    eprint(format_headers_for_display(headers))


# ---------------------------------------------------------------------------
# Interactive input
# ---------------------------------------------------------------------------

def natural_sort_key(s: str) -> List[Union[int, str]]:
    """Sort key that orders embedded numbers numerically (key2 before key10)."""
    return [int(text) if text.isdigit() else text.lower()
            for text in re.split(r'(\d+)', s)]


def has_ordered_characters(query: str, target: str) -> bool:
    """Check if all characters of query appear in order in target (case-insensitive)."""
    remaining = iter(target.lower())
    return all(char in remaining for char in query.lower())


def _is_pem_file(path: Path) -> bool:
    return path.is_file() and path.suffix.lower() == '.pem'


def rank_candidates(query: str, candidates: List[Path]) -> List[Tuple[str, float, Path]]:
    """
    Fuzzy-rank candidate paths against a query.

    Candidates must contain the query's characters in order. They are scored
    with rapidfuzz, prefix matches get a bonus, and PEM files are listed
    before directories.

    Returns:
        List of (name, score, path), best first
    """
    if not query:
        return []

    viable = [c for c in candidates if has_ordered_characters(query, c.name)]
    if not viable:
        return []

    from rapidfuzz import fuzz, process

    scored = process.extract(
        query,
        [c.name for c in viable],
        scorer=fuzz.QRatio,
        processor=str.lower,
        limit=None
    )

    results: List[Tuple[str, float, Path]] = []
    for name, score, index in scored:
        if name.lower().startswith(query.lower()):
            score += 50.0
        results.append((name, float(score), viable[index]))

    results.sort(key=lambda r: (not _is_pem_file(r[2]), -r[1], natural_sort_key(r[0])))
    return results


class PemPathCompleter:
    """
    Completer for PEM file paths with fuzzy matching on the last segment.

    Implements prompt_toolkit's Completer protocol via duck typing.
    """

    def __init__(self, base_dir: Path) -> None:
        self.base_dir: Path = base_dir

    def _candidates(self, directory: Path) -> List[Path]:
        """Directories and *.pem files directly inside directory."""
        if not directory.is_dir():
            return []
        try:
            return [p for p in directory.iterdir() if p.is_dir() or _is_pem_file(p)]
        except PermissionError:
            return []

    def _directory_for(self, dir_part: str) -> Path:
        if not dir_part:
            # text started with '/'
            return Path('/')
        directory = expand_path(dir_part)
        return directory if directory.is_absolute() else self.base_dir / directory

    def complete(self, text: str) -> List[Tuple[str, int]]:
        """
        Compute completions for the text before the cursor.

        Returns:
            List of (completion text, start position) pairs
        """
        # wait for '~/' before completing in the home directory
        if text.startswith('~') and '/' not in text:
            return []

        dir_part, slash, query = text.rpartition('/')
        directory = self._directory_for(dir_part) if slash else self.base_dir
        candidates = self._candidates(directory)

        if not query:
            pem_files = sorted((c for c in candidates if _is_pem_file(c)), key=lambda p: natural_sort_key(p.name))
            directories = sorted((c for c in candidates if c.is_dir()), key=lambda p: natural_sort_key(p.name))
            return [(p.name, 0) for p in pem_files] + [(p.name + '/', 0) for p in directories]

        return [
            (name + '/' if path.is_dir() else name, -len(query))
            for name, _, path in rank_candidates(query, candidates)
        ]

    def get_completions(self, document: Any, complete_event: Any) -> Iterator[Any]:
        from prompt_toolkit.completion import Completion

        for completion_text, start_position in self.complete(document.text_before_cursor):
            yield Completion(completion_text, start_position=start_position, display=completion_text)

    async def get_completions_async(self, document: Any, complete_event: Any) -> Any:
        for completion in self.get_completions(document, complete_event):
            yield completion


def detect_editing_mode_from_inputrc() -> str:
    """
    Detect editing mode (vi or emacs) from ~/.inputrc.

    Returns:
        'vi' or 'emacs' (the default)
    """
    inputrc_path = Path.home() / '.inputrc'
    try:
        content = inputrc_path.read_text()
    except OSError:
        return 'emacs'

    for line in content.splitlines():
        match = re.match(r'^set\s+editing-mode\s+(vi|emacs)\s*$', line.split('#')[0].strip(), re.IGNORECASE)
        if match:
            return match.group(1).lower()
    return 'emacs'


def prompt_for_input(
    prompt_text: str,
    completer: Optional[Any] = None,
    validator_func: Optional[Callable[[str], Any]] = None
) -> str:
    """
    Prompt user for input on stderr with line editing.

    Args:
        prompt_text: The prompt to display
        completer: Optional prompt_toolkit completer
        validator_func: Raises ValidationError for unacceptable input

    Returns:
        User input string
    """
    try:
        from prompt_toolkit import PromptSession
        from prompt_toolkit.enums import EditingMode
        from prompt_toolkit.output import create_output
        from prompt_toolkit.validation import Validator, ValidationError as PTValidationError
    except ImportError as e:
        raise DependencyError('prompting', f"--interactive requires prompt_toolkit: {e}", cause=e) from e

    class InputValidator(Validator):
        def validate(self, document: Any) -> None:
            text = document.text.strip()
            if not text:
                raise PTValidationError(message="a value is required")
            if validator_func is None:
                return
            try:
                validator_func(text)
            except ValidationError as e:
                raise PTValidationError(message=str(e).splitlines()[0], cursor_position=len(document.text))

    editing_mode = EditingMode.VI if detect_editing_mode_from_inputrc() == 'vi' else EditingMode.EMACS
    session: Any = PromptSession(
        message=prompt_text,
        editing_mode=editing_mode,
        completer=completer,
        complete_while_typing=completer is not None,
        validator=InputValidator(),
        validate_while_typing=False,
        output=create_output(stdout=sys.stderr)
    )

    try:
        return session.prompt().strip()
    except (EOFError, KeyboardInterrupt):
        eprint()
        fatal_error("Input cancelled by user")


def collect_interactive_inputs(args: argparse.Namespace) -> None:
    """Prompt for the app id and key path when they were not given."""
    if not args.interactive:
        return

    if not args.app_id:
        args.app_id = prompt_for_input("Enter GitHub App ID: ", validator_func=validate_app_id)

    if not args.key and not args.base64_key:
        args.key = prompt_for_input(
            "Enter path to private key PEM file: ",
            completer=PemPathCompleter(Path.cwd()),
            validator_func=lambda text: validate_pem_file(expand_path(text))
        )


# ---------------------------------------------------------------------------
# Command line
# ---------------------------------------------------------------------------

def parse_arguments(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """Parse and return command-line arguments."""
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        '--hostname',
        default=DEFAULT_HOSTNAME,
        help=f'GitHub API hostname; anything other than {DEFAULT_HOSTNAME} is '
             f'treated as GitHub Enterprise Server (default: {DEFAULT_HOSTNAME})'
    )
    common.add_argument(
        '--user-agent',
        default=DEFAULT_USER_AGENT,
        help=f'Custom User-Agent header (default: {DEFAULT_USER_AGENT})'
    )
    common.add_argument('--debug', action='store_true', help='Enable debug output (verbose mode)')
    common.add_argument('--quiet', action='store_true', help='Quiet mode - only output the result')
    common.add_argument(
        '--dry-run',
        action='store_true',
        help='Validate inputs and show what would be done without making API calls'
    )

    app_auth = argparse.ArgumentParser(add_help=False)
    app_auth.add_argument('--key', '-k', help='Path to the GitHub App private key PEM file')
    app_auth.add_argument(
        '--base64_key', '--base64-key', '-b',
        dest='base64_key',
        help='Base64-encoded GitHub App private key (alternative to --key)'
    )
    app_auth.add_argument('--app_id', '--app-id', '-i', dest='app_id', help='GitHub App ID')
    app_auth.add_argument(
        '--duration', '-d',
        default=DEFAULT_DURATION,
        help=f'JWT lifetime in minutes, {MIN_DURATION}-{MAX_DURATION} (default: {DEFAULT_DURATION})'
    )
    app_auth.add_argument(
        '--interactive',
        action='store_true',
        help='Prompt for a missing app id or key path'
    )

    parser = argparse.ArgumentParser(
        prog='gh-apptoken',
        description="Mint and revoke GitHub App installation access tokens",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # List the app's installations
  %(prog)s installations --key app.pem --app_id 123456

  # Token for the first installation found
  %(prog)s generate --key app.pem --app_id 123456

  # Token for a given installation, key passed inline
  %(prog)s generate --base64_key "$(base64 -w0 app.pem)" --app_id 123456 --installation_id 987

  # Only the JWT
  %(prog)s generate --jwt --key app.pem --app_id 123456 --output-format text

  # GitHub Enterprise Server
  %(prog)s generate --key app.pem --app_id 12 --hostname github.example.com

  # Revoke a token
  %(prog)s revoke --token ghs_xxx
        """
    )
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')
    subparsers = parser.add_subparsers(dest='command', metavar='COMMAND')
    subparsers.required = True

    list_parser = subparsers.add_parser(
        'installations',
        parents=[app_auth, common],
        help="List the app's installations"
    )
    list_parser.add_argument('--ids-only', action='store_true', help='Print one installation id per line')

    generate_parser = subparsers.add_parser(
        'generate',
        parents=[app_auth, common],
        help='Create an installation access token'
    )
    generate_parser.add_argument(
        '--installation_id', '--installation-id', '-n',
        dest='installation_id',
        help='Installation ID (default: the first installation of the app)'
    )
    generate_parser.add_argument(
        '--jwt',
        action='store_true',
        help='Generate and output only the JWT (do not exchange it for a token)'
    )
    generate_parser.add_argument(
        '--output-format',
        choices=['json', 'text', 'env', 'header'],
        default='json',
        help='Output format (default: json)'
    )

    revoke_parser = subparsers.add_parser('revoke', parents=[common], help='Revoke an installation token')
    revoke_parser.add_argument('--token', '-t', help='Installation access token to revoke')

    args = parser.parse_args(argv)

    if args.quiet and args.debug:
        parser.error("--quiet and --debug are mutually exclusive")

    if getattr(args, 'jwt', False) and args.installation_id:
        parser.error("--jwt and --installation_id are mutually exclusive")

    return args


def progress(args: argparse.Namespace, message: str) -> None:
    if not args.quiet:
        eprint(message)


def run_installations(args: argparse.Namespace) -> int:
    base_url = api_url_for_hostname(validate_hostname(args.hostname))

    if args.dry_run:
        jwt_token, _ = create_app_jwt(args.app_id, args.key, args.base64_key, args.duration, debug=args.debug)
        show_dry_run('GET', f"{base_url}/app/installations", build_headers(f"Bearer {jwt_token}", args.user_agent))
        return 0

    progress(args, "Listing installations...")
    found = installations(
        app_id=args.app_id,
        key_path=args.key,
        base64_key=args.base64_key,
        duration=args.duration,
        hostname=args.hostname,
        user_agent=args.user_agent,
        debug=args.debug
    )

    if args.ids_only:
        for installation in found:
            if isinstance(installation, dict) and installation.get('id') is not None:
                print(installation['id'])
    else:
        print(json.dumps(found, indent=2))
    return 0


def run_generate(args: argparse.Namespace) -> int:
    if args.jwt or args.dry_run:
        installation_id = validate_installation_id(args.installation_id)
        base_url = api_url_for_hostname(validate_hostname(args.hostname))
        jwt_token, claims = create_app_jwt(args.app_id, args.key, args.base64_key, args.duration, debug=args.debug)

        if args.jwt:
            output_jwt(jwt_token, claims, args.output_format)
            return 0

        headers = build_headers(f"Bearer {jwt_token}", args.user_agent)
        if installation_id is None:
            show_dry_run('GET', f"{base_url}/app/installations", headers)
            installation_id_text = "{first installation id}"
        else:
            installation_id_text = str(installation_id)
        show_dry_run('POST', f"{base_url}/app/installations/{installation_id_text}/access_tokens", headers)
        return 0

    progress(args, f"Generating JWT (expires in {args.duration} minutes)...")
    progress(args, "Exchanging JWT for installation token...")
    token_data = generate(
        app_id=args.app_id,
        key_path=args.key,
        base64_key=args.base64_key,
        duration=args.duration,
        installation_id=args.installation_id,
        hostname=args.hostname,
        user_agent=args.user_agent,
        debug=args.debug
    )

    debug_print(f"Token: {mask_token(token_data['token'])}", args.debug)
    if token_data.get('expires_at'):
        progress(args, f"Successfully obtained installation token, expires {format_expiration(token_data['expires_at'])}")

    output_token(token_data, args.output_format)
    return 0


def run_revoke(args: argparse.Namespace) -> int:
    if args.dry_run:
        token = validate_token(args.token)
        base_url = api_url_for_hostname(validate_hostname(args.hostname))
        show_dry_run('DELETE', f"{base_url}/installation/token", build_headers(f"Token {token}", args.user_agent))
        return 0

    result = revoke(args.token, hostname=args.hostname, user_agent=args.user_agent, debug=args.debug)
    print(result.message)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point - dispatches to the requested command."""
    args = parse_arguments(argv)
    try:
        if args.command == 'revoke':
            return run_revoke(args)

        collect_interactive_inputs(args)
        if args.command == 'installations':
            return run_installations(args)
        return run_generate(args)
    except TokenGenError as e:
        if args.debug:
            traceback.print_exc()
        fatal_error(str(e))


def _exit_on_sigterm(signum: int, frame: Any) -> NoReturn:
    # SystemExit unwinds through the finally blocks that remove temporary keys
    raise SystemExit(128 + signum)


def run() -> None:
    """Console script entry point."""
    signal.signal(signal.SIGTERM, _exit_on_sigterm)
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        eprint("\nInterrupted by user")
        sys.exit(130)
    except Exception as e:
        fatal_error(f"Unexpected error: {e}")


if __name__ == '__main__':
    run()
