"""
Admin area: per-polo grants for users, all-requests listing, per-polo
reports (HTML + CSV) and the audit trail.
"""
