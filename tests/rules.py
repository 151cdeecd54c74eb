"""Rules providers picked up through ``model-rules-module: tests.rules``."""


class PostRules:
    def rules(self, mode="create"):
        if mode == "update":
            return {"title": "string|max:50", "body": "nullable|string"}
        return {"title": "required|string|max:50", "body": "nullable|string"}

    def rules_with_genre(self, mode="create"):
        return {**self.rules(mode), "genre": "required"}

    def custom_rules(self, mode="create"):
        return {"title": "in:custom,post,rules"}


class GenreRules:
    def rules(self, mode="create"):
        return {"name": "string|max:50"}

    def custom_rules(self, mode="create"):
        return {"name": "in:custom,rules,work", "id": "integer|min:1"}

    def broken_rules(self, mode="create"):
        return "something other than a mapping"


class CommentRules:
    def rules(self, mode="create"):
        return {"title": "required|string", "body": "nullable|string"}


class AuthorRules:
    def rules(self, mode="create"):
        return {"name": "required|string", "gender": "in:m,f"}


class SpecialRules:
    def rules(self, mode="create"):
        return {"name": "nullable|string|max:50"}
