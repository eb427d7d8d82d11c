"""
Exceptions DeepLoom
===================

Seule CompilationCancelled remonte jusqu'à l'appelant du compilateur.
Les autres sont attrapées à la frontière de chaque étape et converties
en fallback, en étape sautée ou en validationIssue.
"""


class DeepLoomError(Exception):
    """Base des erreurs du compilateur."""


class CompilerResponseError(DeepLoomError):
    """Réponse LLM vide ou JSON inexploitable."""


class SchemaRejectedError(DeepLoomError):
    """Le provider refuse le mécanisme json_schema (structured outputs)."""


class CompilationCancelled(DeepLoomError):
    """Signal d'annulation déclenché pendant la compilation."""

    def __init__(self, reason: str = "Compilation cancelled."):
        super().__init__(reason)
        self.reason = reason
