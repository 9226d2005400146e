"""
Identity Resolution

This package decides whether an account name belongs to a premium identity by
asking one or more remote identity providers over HTTP.

Key Components:
- result.py: ResolutionResult model, name validation and id parsing
- providers.py: Per-provider HTTP resolvers with rate limiting
- pool.py: Concurrent race across every enabled provider
- __main__.py: CLI interface for resolution

Resolution rules:
1. Names that can never be premium (empty, bad characters) resolve OFFLINE with
   no network call.
2. The first PREMIUM answer from any provider wins.
3. Otherwise the first OFFLINE answer wins.
4. Otherwise the result is UNKNOWN, which callers must treat as "cannot decide".
"""
