"""Core application configuration & tunable governance rules.

All business rules that may evolve (channel classification, fallback source
mapping, status vocabularies, dedup TTL, retry/circuit thresholds, audit
windows) are centralized here so they can be adjusted without diving into
service logic. Values are read from the environment once at import time; tests
monkeypatch the dicts directly or inject explicit settings into services.
"""
from __future__ import annotations

import os


def _env_bool(name: str, default: bool) -> bool:
	raw = os.getenv(name)
	if raw is None or not raw.strip():
		return default
	return raw.strip().lower() in {"1", "true", "yes", "on"}


# ------------------------------ Tracking platform -------------------------- #
KEITARO_BASE_URL: str = os.getenv("KEITARO_BASE_URL", "http://localhost:8080").rstrip("/")
KEITARO_API_KEY: str | None = os.getenv("KEITARO_API_KEY") or None
KEITARO_TIMEOUT_SECONDS: float = float(os.getenv("KEITARO_TIMEOUT_SECONDS", "10"))
KEITARO_PAGE_SIZE: int = int(os.getenv("KEITARO_PAGE_SIZE", "1000"))
KEITARO_MAX_ROWS: int = int(os.getenv("KEITARO_MAX_ROWS", "50000"))
KEITARO_REPORT_TIMEZONE: str = os.getenv("KEITARO_REPORT_TIMEZONE", "Europe/Moscow")

# ------------------------------- Chat transport ---------------------------- #
TELEGRAM_BOT_TOKEN: str | None = os.getenv("TELEGRAM_BOT_TOKEN") or None
TELEGRAM_API_BASE: str = os.getenv("TELEGRAM_API_BASE", "https://api.telegram.org").rstrip("/")
TELEGRAM_TIMEOUT_SECONDS: float = float(os.getenv("TELEGRAM_TIMEOUT_SECONDS", "5"))
# Pacing between sequential subscriber sends (chat API flood limits)
TELEGRAM_SEND_DELAY_SECONDS: float = float(os.getenv("TELEGRAM_SEND_DELAY_SECONDS", "0.05"))

# Operators receive internal error reports and audit summaries.
_owners_raw = os.getenv("OWNER_IDS", "").strip()
OWNER_IDS: list[int] = [int(o.strip()) for o in _owners_raw.split(",") if o.strip().lstrip("-").isdigit()]

# Bearer token for admin / audit endpoints. Unset => admin API disabled (503).
ADMIN_API_TOKEN: str | None = os.getenv("ADMIN_API_TOKEN") or None

# --------------------------- Channel classification ------------------------ #
# target_ids: channels whose monetization events are delivered to subscribers.
# ignored_ids: channels explicitly excluded. Must be disjoint from target_ids.
TRAFFIC_CHANNELS: dict[str, set[int] | dict[int, str]] = {
	"target_ids": set(range(3, 18)),
	"ignored_ids": {2},
	"names": {
		2: "Google",
		3: "MNSTR Apps",
		4: "ZM Apps",
		5: "Trident-media.agency",
		6: "Wildwildapps.net",
		7: "TDApps",
		8: "IRENT",
		9: "PWA Market",
		10: "BlackApp.dev",
		11: "Skakapp.com",
		12: "TG",
		13: "ASO",
		14: "InApp",
		15: "Appsheroes.com",
		16: "PWA Partners",
		17: "WWA",
	},
}

# ---------------------------- Fallback attribution ------------------------- #
# Lower-case postback source token -> known target channel. Consulted only when
# the tracking platform has no conversion for the identifier after the retry.
FALLBACK_SOURCES: dict[str, dict[str, str | int]] = {
	"bettitltr": {"channel_name": "PWA Market", "channel_id": 9},
	"pwa.partners": {"channel_name": "PWA Partners", "channel_id": 16},
}

# ------------------------------ Status vocabulary -------------------------- #
STATUS_KEYWORDS: dict[str, list[str]] = {
	"rejection": [
		"reject", "cancel", "decline", "chargeback", "refund",
		"reversed", "fraud", "trash", "fail",
	],
	"lead": [
		"lead", "reg", "signup", "sign_up", "install", "click", "impression",
	],
	# Only these substrings override a lead match (narrower than "deposit").
	"lead_override": ["dep", "sale"],
	"deposit": [
		"sale", "dep", "approved", "confirmed", "success", "paid",
		"ftd", "first_dep", "purchase", "conversion",
	],
	"legacy_exact": ["sale", "dep", "deposit", "first_dep_confirmed", "dep_confirmed"],
	# Status filter sent to the tracking platform for bulk (audit) queries
	"monetization": ["sale", "dep", "deposit", "confirmed", "approved"],
}

# --------------------------------- Dedup cache ----------------------------- #
DEDUP_SETTINGS: dict[str, float] = {
	"ttl_seconds": 24 * 60 * 60,
	"sweep_interval_seconds": 60 * 60,
}

# ------------------------------ Attribution retry -------------------------- #
ATTRIBUTION_SETTINGS: dict[str, float] = {
	# Pipeline waits this long before the single re-lookup (platform indexing lag)
	"indexing_delay_seconds": float(os.getenv("ATTRIBUTION_INDEXING_DELAY_SECONDS", "30")),
	# Upper bound for one lookup call including its own HTTP retries
	"lookup_timeout_seconds": 15.0,
}

# --------------------------------- Backoff -------------------------------- #
BACKOFF_POLICY: dict[str, int | float] = {
	"base_seconds": 1,
	"factor": 2,          # Exponential factor
	"max_seconds": 10,
	"max_attempts": 3,
	"jitter_pct": 0.10,   # +/-10% jitter
}

# Chat sends inside a subscriber fan-out
TELEGRAM_BACKOFF_POLICY: dict[str, int | float] = {
	"base_seconds": 0.5,
	"factor": 2,
	"max_seconds": 5,
	"max_attempts": 2,
	"jitter_pct": 0.10,
}

# ----------------------------- Circuit Breaker ---------------------------- #
CIRCUIT_BREAKER: dict[str, int | float] = {
	"failure_threshold": 5,          # Consecutive failures before OPEN
	"open_cooldown_seconds": 300,    # Stay OPEN for 5 minutes
	"half_open_probe_count": 3,      # Probes allowed in HALF_OPEN
}

# ---------------------------------- Audit --------------------------------- #
AUDIT_SCHEDULER_ENABLED: bool = _env_bool("AUDIT_SCHEDULER_ENABLED", True)

AUDIT_SETTINGS: dict[str, int | float | str] = {
	"notification_kind": "deposit",
	"prefix_length": 8,
	"freshness_window_minutes": 5,
	"emergency_success_rate_threshold": 0.95,
	"history_size": 100,
	"timezone": os.getenv("AUDIT_TIMEZONE", "Europe/Moscow"),
	"daily_hour": 9,
	"weekly_day_of_week": "sun",
	"weekly_hour": 10,
	"emergency_every_hours": 4,
}


def validate_channel_configuration() -> dict[str, object]:
	"""Check channel + fallback tables for consistency.

	Overlap between target and ignored sets is an error. Missing names and
	fallback channels outside the target set are warnings.
	"""
	target = set(TRAFFIC_CHANNELS["target_ids"])  # type: ignore[arg-type]
	ignored = set(TRAFFIC_CHANNELS["ignored_ids"])  # type: ignore[arg-type]
	names = TRAFFIC_CHANNELS["names"]
	errors: list[str] = []
	warnings: list[str] = []

	overlap = sorted(target & ignored)
	if overlap:
		errors.append(f"Channels both targeted and ignored: {overlap}")
	unnamed = sorted(cid for cid in target | ignored if cid not in names)  # type: ignore[operator]
	if unnamed:
		warnings.append(f"{len(unnamed)} channels without names: {unnamed}")
	for token, binding in FALLBACK_SOURCES.items():
		if int(binding["channel_id"]) not in target:
			warnings.append(f"Fallback source '{token}' maps to non-target channel {binding['channel_id']}")

	return {
		"valid": not errors,
		"errors": errors,
		"warnings": warnings,
		"target_count": len(target),
		"ignored_count": len(ignored),
		"named_count": len(names),  # type: ignore[arg-type]
		"fallback_count": len(FALLBACK_SOURCES),
	}


__all__ = [
	"KEITARO_BASE_URL",
	"KEITARO_API_KEY",
	"KEITARO_TIMEOUT_SECONDS",
	"KEITARO_PAGE_SIZE",
	"KEITARO_MAX_ROWS",
	"KEITARO_REPORT_TIMEZONE",
	"TELEGRAM_BOT_TOKEN",
	"TELEGRAM_API_BASE",
	"TELEGRAM_TIMEOUT_SECONDS",
	"TELEGRAM_SEND_DELAY_SECONDS",
	"OWNER_IDS",
	"ADMIN_API_TOKEN",
	# Rule groups
	"TRAFFIC_CHANNELS",
	"FALLBACK_SOURCES",
	"STATUS_KEYWORDS",
	"DEDUP_SETTINGS",
	"ATTRIBUTION_SETTINGS",
	"BACKOFF_POLICY",
	"TELEGRAM_BACKOFF_POLICY",
	"CIRCUIT_BREAKER",
	"AUDIT_SCHEDULER_ENABLED",
	"AUDIT_SETTINGS",
	"validate_channel_configuration",
]
