"""
Gatekeeper - Premium/Offline Identity Resolution Service

This module decides, for an account name connecting to a game proxy, whether it
belongs to a centrally verified ("premium") identity or a locally registered
("offline") one, and resolves collisions between the two namespaces.

Key Components:
- resolve: Remote identity providers and the concurrent resolver pool
- cache: Two-tier resolution cache with background refresh
- auth: Authorization cache, sessions, brute force tracking, conflict handling
- store: Player records, their coordinator and the invalidation channel
- admission: The fail-secure decision for each connection attempt
- app: Web application layer, configuration and background tasks

Decision Flow:
1. A connection attempt asks for an admission decision.
2. The premium decision cache is consulted, then the resolution cache, then the
   providers themselves.
3. The decision is combined with any stored record and run through the
   conflict state machine.
4. When nothing can be verified, the connection is denied.

Record changes flow back through the invalidation channel so that cached
authorization never outlives the record it was derived from.
"""
