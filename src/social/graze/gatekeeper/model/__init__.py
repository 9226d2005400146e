"""
Database Models

This package defines the persistent data structures for the gatekeeper service
using SQLAlchemy ORM, along with the pydantic values passed between components.

Key Models:
- base.py: Base SQLAlchemy model with common type definitions
- players.py: PlayerRecord value and the `players` table it is stored in
- health.py: Health monitoring gauge

A player row is keyed by the lowercase nickname. Every row carries either a local
credential hash, a remote identity id, or both.
"""
