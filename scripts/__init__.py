"""
Scripts Package.

Operational scripts for the trade builder.

Scripts:
- rebuild_trades: Incremental or full trade rebuild for one or more users
"""
