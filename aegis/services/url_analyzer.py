"""
Structural URL analysis.
Pure heuristics over the URL string: no network, no state.
"""

import ipaddress
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional, Set

from aegis.config import settings
from aegis.errors import InvalidURL
from aegis.schemas.analysis_schemas import Severity, UrlCategory
from aegis.utils.preprocessing import raw_hostname, split_url


HIGH_RISK_TLDS = {
    "tk", "ml", "ga", "cf", "gq", "xyz", "top", "wang", "win", "loan", "bid",
    "racing", "date", "party", "download", "stream", "gdn", "icu", "work",
    "click", "review", "country", "kim", "men", "zip", "mov",
}

MEDIUM_RISK_TLDS = {
    "online", "site", "club", "info", "biz", "live", "shop", "store", "buzz",
    "space", "fun", "website", "link", "ru", "cn", "su", "pw", "cc", "ws",
}

LOW_RISK_TLDS = {
    "com", "org", "net", "edu", "gov", "mil", "int", "io", "dev", "app", "co",
    "ai", "me", "us", "uk", "ca", "au", "nz", "ie", "de", "fr", "es", "it",
    "nl", "be", "ch", "at", "se", "no", "dk", "fi", "pl", "pt", "cz", "eu",
    "jp", "kr", "in", "sg", "br", "mx", "tv", "museum", "aero",
}

DISPOSABLE_DOMAIN_SUFFIXES = (
    "000webhostapp.com",
    "ngrok.io",
    "ngrok-free.app",
    "duckdns.org",
    "no-ip.org",
    "hopto.org",
    "serveo.net",
    "glitch.me",
    "freenom.com",
)

# "invoice.php.exe", "login.html.zip"
SCRIPT_BEFORE_RISKY_SUFFIX = re.compile(
    r"\.(?:php|asp|aspx|jsp|html?|js|cgi)\.(?:exe|scr|zip|rar|bat|cmd|vbs|js|jar|tk|ml|ga|gq|cf)(?=$|[/?#])",
    re.IGNORECASE,
)
SCRIPT_LIKE_HOST_SUFFIX = re.compile(r"\.(?:php|asp|aspx|jsp|html?)$", re.IGNORECASE)

PERCENT_ESCAPE = re.compile(r"%[0-9A-Fa-f]{2}")
ALLOWED_ESCAPES = {
    "%20", "%21", "%23", "%25", "%26", "%27", "%28", "%29", "%2B", "%2C",
    "%2D", "%2E", "%2F", "%3A", "%3B", "%3D", "%3F", "%40", "%5B", "%5D",
    "%5F", "%7E",
}

STANDARD_PORTS = {80, 443}

AUTH_KEYWORDS = re.compile(r"(login|signin|sign-in|logon|account|password|credential|verify|auth)", re.IGNORECASE)
FINANCE_KEYWORDS = re.compile(r"(bank|banking|payment|pay|wallet|invoice|billing|checkout|crypto)", re.IGNORECASE)
MARKETING_KEYWORDS = re.compile(r"(free|win|prize|lucky|bonus|discount|deal|offer|promo|giveaway)", re.IGNORECASE)
DOWNLOAD_EXTENSIONS = re.compile(r"\.(exe|msi|dmg|apk|zip|rar|7z|scr|bat|jar)(?=$|[?#])", re.IGNORECASE)


class IssueKind(str, Enum):
    EXCESSIVE_SUBDOMAINS = "excessive_subdomains"
    HIGH_RISK_TLD = "high_risk_tld"
    MEDIUM_RISK_TLD = "medium_risk_tld"
    UNRECOGNIZED_TLD = "unrecognized_tld"
    SUSPICIOUS_PATTERN = "suspicious_pattern"
    SUSPICIOUS_ENCODING = "suspicious_encoding"
    PUBLIC_IP_LITERAL = "public_ip_literal"
    NON_STANDARD_PORT = "non_standard_port"
    LONG_HOSTNAME = "long_hostname"
    MIXED_CASE_HOSTNAME = "mixed_case_hostname"


# Any one of these forces HIGH on its own
HARD_ISSUES = {
    IssueKind.HIGH_RISK_TLD,
    IssueKind.SUSPICIOUS_ENCODING,
    IssueKind.PUBLIC_IP_LITERAL,
}

# Any one of these raises LOW to MEDIUM
SOFT_ISSUES = {
    IssueKind.MEDIUM_RISK_TLD,
    IssueKind.UNRECOGNIZED_TLD,
    IssueKind.SUSPICIOUS_PATTERN,
}

INVALID_URL_ISSUE = "Invalid URL format"


@dataclass
class Finding:
    kind: IssueKind
    message: str


@dataclass
class StructuralVerdict:
    """Result of structural analysis."""
    url: str
    severity: Severity
    safe: bool
    findings: List[Finding] = field(default_factory=list)
    category: UrlCategory = UrlCategory.UNKNOWN
    valid: bool = True

    @property
    def issues(self) -> List[str]:
        if not self.valid:
            return [INVALID_URL_ISSUE]
        return [f.message for f in self.findings]

    @property
    def kinds(self) -> Set[IssueKind]:
        return {f.kind for f in self.findings}


def classify_severity(findings: List[Finding]) -> Severity:
    """
    HIGH if more than two issues or any hard issue,
    MEDIUM if a soft issue is present, LOW otherwise.
    """
    kinds = {f.kind for f in findings}
    if len(findings) > 2 or kinds & HARD_ISSUES:
        return Severity.HIGH
    if kinds & SOFT_ISSUES:
        return Severity.MEDIUM
    return Severity.LOW


def categorize(host: str, path_and_query: str) -> UrlCategory:
    """Best-effort purpose of a URL from its host and path."""
    text = f"{host}{path_and_query}"
    if DOWNLOAD_EXTENSIONS.search(path_and_query):
        return UrlCategory.DOWNLOAD
    if AUTH_KEYWORDS.search(text):
        return UrlCategory.AUTHENTICATION
    if FINANCE_KEYWORDS.search(text):
        return UrlCategory.FINANCE
    if MARKETING_KEYWORDS.search(text):
        return UrlCategory.MARKETING
    return UrlCategory.GENERAL


def _public_ipv4(host: str) -> Optional[bool]:
    """True for a public IPv4 literal, False for a private one, None if not IPv4."""
    try:
        ip = ipaddress.ip_address(host)
    except ValueError:
        return None
    if ip.version != 4:
        return None
    return not (ip.is_private or ip.is_loopback or ip.is_link_local
                or ip.is_reserved or ip.is_multicast or ip.is_unspecified)


class StructuralAnalyzer:
    """
    Heuristic URL classifier.

    Checks:
    - Subdomain depth
    - TLD risk tier (high / medium / low / unrecognized)
    - Known suspicious patterns (scheme, script-like suffixes, disposable hosts)
    - Percent-encoding outside common escapes
    - Public IPv4 literal instead of a domain name
    - Non-standard port
    - Hostname length and mixed case
    """

    def __init__(
        self,
        max_subdomains: Optional[int] = None,
        max_hostname_length: Optional[int] = None,
    ):
        self.max_subdomains = max_subdomains if max_subdomains is not None else settings.max_subdomains
        self.max_hostname_length = (
            max_hostname_length if max_hostname_length is not None else settings.max_hostname_length
        )

    def analyze(self, url: str) -> StructuralVerdict:
        """Classify a URL. Malformed input fails closed with HIGH severity."""
        try:
            findings, category = self._inspect(url)
        except InvalidURL:
            return StructuralVerdict(
                url=url,
                severity=Severity.HIGH,
                safe=False,
                category=UrlCategory.UNKNOWN,
                valid=False,
            )

        severity = classify_severity(findings)
        return StructuralVerdict(
            url=url,
            severity=severity,
            safe=severity == Severity.LOW,
            findings=findings,
            category=category,
        )

    def _inspect(self, url: str):
        parts = split_url(url)
        host = parts.hostname
        raw_host = raw_hostname(parts) or host
        findings: List[Finding] = []

        # 1) Literal IP host
        public_ip = _public_ipv4(host)
        is_ip = public_ip is not None or ":" in host
        if public_ip:
            findings.append(Finding(
                IssueKind.PUBLIC_IP_LITERAL,
                f"Direct IP address used instead of a domain name ({host})",
            ))

        # 2) Subdomains and TLD (domain names only)
        if not is_ip:
            labels = [label for label in host.split(".") if label]
            subdomains = max(len(labels) - 2, 0)
            if subdomains > self.max_subdomains:
                findings.append(Finding(
                    IssueKind.EXCESSIVE_SUBDOMAINS,
                    f"Excessive number of subdomains ({subdomains})",
                ))
            findings.extend(self._check_tld(labels, subdomains))

        # 3) Suspicious patterns
        findings.extend(self._check_patterns(parts.scheme, host, parts.path))

        # 4) Encoding
        odd_escapes = sorted({
            e.upper() for e in PERCENT_ESCAPE.findall(url)
            if e.upper() not in ALLOWED_ESCAPES
        })
        if odd_escapes:
            findings.append(Finding(
                IssueKind.SUSPICIOUS_ENCODING,
                f"Suspicious character encoding ({', '.join(odd_escapes[:5])})",
            ))

        # 5) Port
        if parts.port is not None and parts.port not in STANDARD_PORTS:
            findings.append(Finding(
                IssueKind.NON_STANDARD_PORT,
                f"Non-standard port ({parts.port})",
            ))

        # 6) Hostname shape
        if len(host) > self.max_hostname_length:
            findings.append(Finding(
                IssueKind.LONG_HOSTNAME,
                f"Unusually long hostname ({len(host)} characters)",
            ))
        if raw_host != raw_host.lower() and raw_host != raw_host.upper():
            findings.append(Finding(IssueKind.MIXED_CASE_HOSTNAME, "Mixed-case hostname"))

        path_and_query = parts.path + (f"?{parts.query}" if parts.query else "")
        return findings, categorize(host, path_and_query)

    def _check_tld(self, labels: List[str], subdomains: int) -> List[Finding]:
        if len(labels) < 2:
            return [Finding(IssueKind.UNRECOGNIZED_TLD, "Hostname has no top-level domain")]

        tld = labels[-1]
        if tld in HIGH_RISK_TLDS:
            return [Finding(IssueKind.HIGH_RISK_TLD, f"High-risk top-level domain (.{tld})")]
        if tld in MEDIUM_RISK_TLDS:
            name = labels[-2]
            complex_host = subdomains >= 2 or "-" in name or any(c.isdigit() for c in name)
            if complex_host:
                return [Finding(
                    IssueKind.MEDIUM_RISK_TLD,
                    f"Medium-risk top-level domain (.{tld}) with complex hostname",
                )]
            return []
        if tld in LOW_RISK_TLDS:
            return []
        return [Finding(IssueKind.UNRECOGNIZED_TLD, f"Unrecognized top-level domain (.{tld})")]

    def _check_patterns(self, scheme: str, host: str, path: str) -> List[Finding]:
        findings = []
        if scheme.lower() not in ("http", "https"):
            findings.append(Finding(
                IssueKind.SUSPICIOUS_PATTERN,
                f"Non-HTTP scheme ({scheme.lower()})",
            ))
        if SCRIPT_BEFORE_RISKY_SUFFIX.search(host + path) or SCRIPT_LIKE_HOST_SUFFIX.search(host):
            findings.append(Finding(
                IssueKind.SUSPICIOUS_PATTERN,
                "Script-like file extension in suspicious position",
            ))
        if any(host == s or host.endswith("." + s) for s in DISPOSABLE_DOMAIN_SUFFIXES):
            findings.append(Finding(
                IssueKind.SUSPICIOUS_PATTERN,
                "Hosted on a disposable or free-hosting domain",
            ))
        return findings


