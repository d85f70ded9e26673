"""
Infrastructure Package
======================

Technical plumbing shared by bounded contexts (database engine and sessions).
"""
