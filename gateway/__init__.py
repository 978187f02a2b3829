"""gateway/ -- Edge authentication for TravelAuth.

Layer rule: gateway/ may import from auth/ and core/.
It does NOT import from api/. api/ mounts gateway middleware, not the other way around.
"""
