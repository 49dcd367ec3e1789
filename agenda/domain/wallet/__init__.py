"""WhatsApp wallet domain - prepaid message credits and ledger"""
