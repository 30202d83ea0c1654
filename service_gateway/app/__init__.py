"""
API Gateway Service package for the assessment platform.

The gateway fronts client requests, enforcing:
- Authentication: bearer credentials validated through the auth service,
  cached and coalesced per credential
- Circuit-breaking and retries for resilient downstream calls

Structure:
- app.main: FastAPI app, routes, and middleware wiring.
"""
