"""Session entry points: lane configuration, target lookup and admission."""
