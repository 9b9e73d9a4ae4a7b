class ChatError(Exception):
    pass


class NotFoundError(ChatError):

    def __init__(self, collection: str, doc_id: str) -> None:
        super().__init__(f"{collection}/{doc_id} not found")
        self.collection = collection
        self.doc_id = doc_id


class PermissionDeniedError(ChatError):
    pass


class TransientStoreError(ChatError):
    pass
