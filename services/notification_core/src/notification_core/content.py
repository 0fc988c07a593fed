from dataclasses import dataclass


@dataclass(frozen=True, slots=True)
class RenderedContent:
    """Output of template rendering, ready to hand to a transport."""

    body: str
    subject: str | None = None
    html: str | None = None

    def preview(self, length: int = 50) -> str:
        return self.body[:length] if self.body else "(empty)"
