from penny.models import ParserInfo


class ParserRegistry:
    def __init__(self):
        self._parsers: dict[str, ParserInfo] = {}
        self._by_file_type: dict[str, list[ParserInfo]] = {}

    def register(self, info: ParserInfo) -> None:
        self._parsers[info.key] = info
        for file_type in info.file_types:
            self._by_file_type.setdefault(file_type, []).append(info)

    def get_by_key(self, key: str) -> ParserInfo | None:
        return self._parsers.get(key)

    def get_for_file_type(self, file_type: str) -> ParserInfo | None:
        parsers = self._by_file_type.get(file_type, [])
        return parsers[0] if parsers else None

    def detect(self, text: str) -> ParserInfo | None:
        """Return the first parser whose detect() accepts the content."""
        for info in self._parsers.values():
            if info.detect and info.detect(text):
                return info
        return None

    def list_all(self) -> list[ParserInfo]:
        return list(self._parsers.values())


registry = ParserRegistry()
