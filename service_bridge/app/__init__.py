"""
GitLab Bridge gateway package.

Every bridge route sits behind the access gate, which enforces:
- Authentication: GitLab access tokens, checked against the introspection endpoint
- Authorization: operation -> scope table, dangerous-scope denylist
- Webhook verification: shared-secret token and HMAC body signature
- Rate limiting: in-memory sliding window per caller

Structure:
- app.main: FastAPI app, routes and lifespan wiring.
- app.adapters: HTTP client for GitLab token introspection.
- app.auth: Token, permission and webhook validators plus audit entries.
- app.ratelimit: Sliding-window limiter and key generators.
- app.domain: The gate pipeline that composes the validators per route.
"""
