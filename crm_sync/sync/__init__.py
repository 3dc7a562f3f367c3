"""
crm_sync.sync - Contact reconciliation

Record types, cross-reference resolution, planning, and applying changes.
"""
