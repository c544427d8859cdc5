"""
CourtAtlas package.

Responsible for:
- Importing sports-facility candidates from OpenStreetMap (Overpass) region by region.
- Deduplicating them against existing facility records via a rounded-coordinate index.
- Serving cached, budget-capped geocoding / place lookups (Geoapify first, Google last).
- Auditing regional coverage, queueing targeted backfill crawls, and repairing weak records.
"""

__version__ = "0.4.0"
