"""
Authorization

Key Components:
- cache.py: AuthorizationCache tying together every structure below
- sessions.py: Authenticated sessions with hijack detection
- brute_force.py: Failed login tracking per origin
- premium.py: Long-lived premium decisions per nickname
- conflict.py: Premium/local nickname conflict state machine
"""
