"""Incremental parser from raw agent terminal bytes to domain events.

``feed(state, chunk)`` is pure: it returns a new ``ParserState`` carrying
the unterminated tail and the events decoded from every complete line.
Only complete lines are interpreted, so the events produced for a byte
stream do not depend on how that stream was chunked.
"""

from dataclasses import dataclass
import re

from tunnelpanel.services import agent_events as ev

MAX_PENDING_BYTES = 64 * 1024

LINE_BREAK_RE = re.compile(rb"[\r\n]")
CURSOR_JUMP_RE = re.compile(r"\x1b\[\d*(?:;\d*)?[Hf]")
ANSI_RE = re.compile(
    r"\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)"  # OSC
    r"|\x1b\[[0-?]*[ -/]*[@-~]"  # CSI
    r"|\x1b[()][0-9A-Za-z]"  # charset selection
    r"|\x1b[@-Z\\-_78=>]"  # single-character escapes
)
CONTROL_RE = re.compile(r"[\x00-\x08\x0b-\x1f\x7f-\x9f]")

SECRET_TOKEN_RE = re.compile(r"(?<![A-Fa-f0-9])[A-Fa-f0-9]{64}(?![A-Fa-f0-9])")
AGENT_ADDRESS_RE = re.compile(
    r"(?P<scheme>[a-z][a-z0-9+.-]*://)?"
    r"(?P<host>(?:[a-z0-9-]+\.)+(?:ply\.gg|playit\.gg|joinmc\.link))"
    r"(?::(?P<port>\d{1,5}))?"
    r"(?P<path>/\S*)?",
    re.IGNORECASE,
)
HTTP_URL_RE = re.compile(r"https?://[^\s\"'<>]+", re.IGNORECASE)
CLAIM_CODE_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]{3,127}$")

AUTH_MARKERS = (
    "visit the following url to authenticate",
    "visit link to setup",
    "to claim this agent",
)
ERROR_MARKERS = ("error", "failed", "cannot")
PORT_CONFLICT_MARKER = "address already in use"
CLAIM_URL_TEMPLATE = "https://playit.gg/claim/{code}"


@dataclass(frozen=True)
class ParserState:
    """Bytes received after the last line break."""
    pending: bytes = b""


def clean_ansi(text):
    """Strip escape sequences and control characters from decoded text."""
    if isinstance(text, bytes):
        text = text.decode("utf-8", errors="replace")
    text = str(text).replace("\t", " ")
    text = ANSI_RE.sub("", text)
    return CONTROL_RE.sub("", text).strip()


def extract_secret(text):
    """Return the last 64-hex token in ``text``, or None."""
    matches = SECRET_TOKEN_RE.findall(clean_ansi(text))
    return matches[-1].lower() if matches else None


def extract_claim_code(raw):
    """Return the claim code printed by ``claim generate``, or None."""
    cleaned = clean_ansi(raw)
    lines = [line.strip() for line in cleaned.splitlines() if line.strip()]
    if not lines:
        return None
    candidate = lines[-1]
    if not CLAIM_CODE_RE.match(candidate):
        return None
    return candidate


def claim_code_events(raw):
    """Return ``[Claim]`` for a claim-generate output, else a hard error."""
    code = extract_claim_code(raw)
    if code is None:
        return [ev.AgentError("Failed to extract claim code!")]
    return [ev.Claim(code=code, url=CLAIM_URL_TEMPLATE.format(code=code))]


def find_tunnel_address(line):
    """Return ``host[:port]`` for a public tunnel address in ``line``."""
    for match in AGENT_ADDRESS_RE.finditer(line):
        scheme = (match.group("scheme") or "").lower()
        if scheme not in ("", "tcp://") or match.group("path"):
            continue
        host = match.group("host").lower()
        port = match.group("port")
        if port:
            return f"{host}:{port}"
        if scheme == "tcp://" or host.endswith(".joinmc.link"):
            return host
    return None


def _auth_events(line, lowered):
    if not any(marker in lowered for marker in AUTH_MARKERS):
        return []
    match = HTTP_URL_RE.search(line)
    if not match:
        return []
    url = match.group(0).rstrip(".,;)")
    events = [ev.AuthRequired(url=url)]
    if "/claim/" in url:
        code = url.rsplit("/claim/", 1)[1].split("/", 1)[0]
        if CLAIM_CODE_RE.match(code):
            events.append(ev.Claim(code=code, url=url))
    return events


def classify_line(line):
    """Return the events for one cleaned, non-empty line."""
    events = [ev.AgentOutput(line=line)]
    lowered = line.lower()

    secrets = SECRET_TOKEN_RE.findall(line)
    if secrets:
        events.append(ev.Secret(key=secrets[-1].lower()))

    address = find_tunnel_address(line)
    if address:
        events.append(ev.TunnelCreated(url=address))

    events.extend(_auth_events(line, lowered))

    if any(marker in lowered for marker in ERROR_MARKERS):
        events.append(ev.AgentError(message=line, port_conflict=PORT_CONFLICT_MARKER in lowered))
    elif "warn" in lowered:
        events.append(ev.AgentWarning(message=line))
    return events


def _decode_line(raw_line):
    text = raw_line.decode("utf-8", errors="replace")
    # Full-screen redraws move the cursor instead of printing a newline.
    return [clean_ansi(part) for part in CURSOR_JUMP_RE.split(text)]


def _events_for_raw_lines(raw_lines):
    events = []
    for raw_line in raw_lines:
        for line in _decode_line(raw_line):
            if line:
                events.extend(classify_line(line))
    return events


def feed(state, chunk):
    """Consume ``chunk`` and return ``(new_state, events)``."""
    buffer = state.pending + bytes(chunk or b"")
    parts = LINE_BREAK_RE.split(buffer)
    pending = parts.pop()
    raw_lines = parts
    while len(pending) > MAX_PENDING_BYTES:
        raw_lines.append(pending[:MAX_PENDING_BYTES])
        pending = pending[MAX_PENDING_BYTES:]
    return ParserState(pending=pending), _events_for_raw_lines(raw_lines)


def flush(state):
    """Interpret the unterminated tail at end of stream."""
    if not state.pending:
        return ParserState(), []
    return ParserState(), _events_for_raw_lines([state.pending])


def parse_text(text):
    """Parse a complete output blob (one-shot command output)."""
    data = text.encode("utf-8") if isinstance(text, str) else bytes(text)
    state, events = feed(ParserState(), data)
    _, tail = flush(state)
    return events + tail
