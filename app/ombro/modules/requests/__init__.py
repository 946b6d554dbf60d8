"""
Assistance requests: creation by the requester, scoped listing, review
(approve/reject), comments and invoice/attachment files.

Visibility follows the requester's role:
- solicitante: own requests only
- gestora: requests of the home polo plus granted polos
- admin: everything
"""
