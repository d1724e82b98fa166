"""
Approval Kernel

Decision logic and state contracts for the invoice approval pipeline:
- Canonical roles and alias normalization
- Pure, table-driven permission evaluation
- Time-bounded delegation of project-scoped approver authority
- The invoice status graph and its transition tables
- Append-only audit trail
"""

__version__ = "0.1.0"
