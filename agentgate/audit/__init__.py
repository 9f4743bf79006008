from .chainlog import AuditEntryInput, AuditRecord, AuditSink, ChainAuditLog

__all__ = ["AuditEntryInput", "AuditRecord", "AuditSink", "ChainAuditLog"]
