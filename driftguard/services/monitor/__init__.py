"""
DriftGuard Compliance Monitor
-----------------------------
Continuous compliance monitoring & escalation, invoked once per workspace per
cycle by an external scheduler:
  1. Detect drift against the evidence tables (fixed, ordered check battery)
  2. Track open drift per workspace and escalate it on SLA age
  3. Dispatch alerts to Slack / PagerDuty / generic webhook with retry
  4. Run the auto-response playbook on FAIL + CRITICAL (cooldown guarded)

Modules:
  checks.py        - individual drift checks (fail closed on evidence errors)
  detector.py      - ComplianceDetector: aggregation + audit of every check run
  escalation.py    - DriftTracker: drift records + monotonic escalation state machine
  alerts.py        - AlertDispatcher: channel selection, payloads, fetch_with_retry
  auto_response.py - AutoResponseExecutor: kill-switch, on-call page, incidents
  cycle.py         - ComplianceEngine: wires the above into one cycle
  main.py          - FastAPI service (port 8400)
"""
