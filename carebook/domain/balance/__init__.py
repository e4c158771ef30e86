"""Balance domain - Session balance ledger"""
