from credit_ledger.core.registrar import register_app

app = register_app()
