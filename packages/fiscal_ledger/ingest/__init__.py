"""Static seed data and the loaders that write it into the ledger store."""
