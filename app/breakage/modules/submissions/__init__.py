"""
Breakage/exchange submissions.

- A submission groups one or more items, each with its own photos
- New submissions start pending; an administrator approves or rejects once
- Decided submissions are read-only for their owners
"""
