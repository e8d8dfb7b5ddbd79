"""
MP Session Broker service package.

The broker fronts the upstream MP platform on behalf of internal users,
enforcing:
- Credential indirection: clients hold an opaque session key, never the
  upstream cookie jar or token
- A three-step login handshake as the only place raw cookies cross over
- A single FIFO admission queue in front of every upstream call

Structure:
- app.main: FastAPI app, routes, and component wiring.
- app.cookies: Set-Cookie parsing and Cookie header serialization.
- app.sessions: Session model and the cached session store.
- app.persistence: Durable session repositories (PostgreSQL, in-memory).
- app.proxy: Upstream gateway and bootstrap actions.
- app.ratelimit: Upstream admission queue.
- app.domain: Request context helpers (identity, session key).
"""
