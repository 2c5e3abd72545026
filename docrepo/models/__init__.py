from docrepo.models.document import Document  # noqa: F401
