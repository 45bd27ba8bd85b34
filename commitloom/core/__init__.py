# Subpackages are imported explicitly (e.g. `from commitloom.core.db.models import Base`)
# so the API layer does not pull in the LLM stack until it is needed.
