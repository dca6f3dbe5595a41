"""
Request security service package.

Bundles the engines that prepare, validate and police the requests a
banking client makes, plus a small FastAPI host that emits policy headers
and accepts violation reports:

- app.csrf: CSRF token issuance, validation and revocation.
- app.sanitizer: Rule-driven input threat detection and sanitization.
- app.ratelimit: Sliding-window admission control.
- app.csp: Content-Security-Policy composition and violation intake.
- app.events: Bounded log of security violation events.
- app.gateway: The pipeline that sequences the engines around HTTP calls.
- app.main: FastAPI host wiring.

Design notes:
- Engines are explicit instances built once and passed by reference;
  nothing here keeps module-level state.
- Module import must not perform IO.
"""
