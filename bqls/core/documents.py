"""Open document registry: uri -> latest text"""
from typing import Dict, List, Optional


class DocumentNotOpenError(KeyError):
    """Raised when a document is used before it was opened"""
    pass


class DocumentStore:
    def __init__(self):
        self._texts: Dict[str, str] = {}

    def open(self, uri: str, text: str) -> None:
        self._texts[uri] = text

    def change(self, uri: str, text: str) -> None:
        if uri not in self._texts:
            raise DocumentNotOpenError(uri)
        self._texts[uri] = text

    def close(self, uri: str) -> None:
        self._texts.pop(uri, None)

    def get(self, uri: str) -> Optional[str]:
        return self._texts.get(uri)

    def text_of(self, uri: str) -> str:
        try:
            return self._texts[uri]
        except KeyError:
            raise DocumentNotOpenError(uri) from None

    def uris(self) -> List[str]:
        return list(self._texts)

    def texts(self) -> List[str]:
        return list(self._texts.values())

    def __contains__(self, uri: object) -> bool:
        return uri in self._texts

    def __len__(self) -> int:
        return len(self._texts)
