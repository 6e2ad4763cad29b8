"""
Backend gestione clinica (clienti, terapeuti, agenda).

Struttura:
- config.py        : Settings da ambiente / .env
- db.py            : handle Database (engine + sessioni SQLAlchemy)
- auth_models.py   : utenti e ruoli
- models.py        : clienti, appuntamenti, eventi di audit
- auth_security.py : hash password (passlib) e token JWT (python-jose)
- auth_service.py  : registrazione, login, password, gestione utenti
- policy.py        : regole di accesso e scope filter
- scheduling.py    : slot, prenotazioni, agenda per terapeuta
- services.py      : CRUD clienti, svuotamento dati
- audit.py         : audit log asincrono (fire-and-forget)
- api_main.py      : API REST FastAPI
- seed.py          : Admin iniziale
- cli.py           : strumenti da riga di comando
"""
