"""SQLite storage primitives shared by queue managers and the pruner."""
