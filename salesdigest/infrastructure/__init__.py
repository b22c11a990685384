"""Infrastructure - settings and SQLite plumbing"""
