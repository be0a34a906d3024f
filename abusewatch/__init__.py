"""
abusewatch – turns T-Pot honeypot logs into AbuseIPDB reports.

Watchers tail the Cowrie, Dionaea and Honeytrap JSON logs, fold events into
per-attacker summaries, and hand them to the dispatcher, which enforces the
report cooldown and falls back to bulk reporting while the daily quota is
exhausted.
"""
from __future__ import annotations

__version__ = "1.2.0"
