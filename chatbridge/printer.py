"""
Rich stream printer for displaying streaming chat responses.
"""
import json
from typing import Any, Optional

from rich.console import Console, Group
from rich.live import Live
from rich.markdown import Markdown
from rich.panel import Panel
from rich.syntax import Syntax
from rich.text import Text

from .types import StreamChunkInfo

default_console = Console()


class RichStreamPrinter:
    """
    A stream callback that renders the response live as Markdown using rich.

    Pass an instance straight to ``UnifiedChatClient.stream_chat``; use it as
    a context manager so the live display is closed even if the stream fails::

        with RichStreamPrinter(provider="claude") as printer:
            client.stream_chat("Hello", printer)

    Attributes:
        title: Title for the display panel
        show_metadata: Whether to show stream metrics at the end
        code_theme: Theme for code blocks
        inline_code_theme: Theme for inline code
        refresh_rate: Refresh rate for Live display
        show_final_title: Whether to change title to "Final Response" at the end
        provider: Provider name shown in the title, if any
        max_chars: Stop the stream once this many characters arrived (None = no limit)
    """

    def __init__(
        self,
        title: str = "Streaming Response",
        show_metadata: bool = True,
        code_theme: str = "coffee",
        inline_code_theme: str = "monokai",
        refresh_rate: int = 30,
        show_final_title: bool = True,
        provider: Optional[str] = None,
        border_style: str = "blue",
        max_chars: Optional[int] = None,
        console: Optional[Console] = None,
    ):
        self.title = title
        self.show_metadata = show_metadata
        self.code_theme = code_theme
        self.inline_code_theme = inline_code_theme
        self.refresh_rate = refresh_rate
        self.show_final_title = show_final_title
        self.provider = provider
        self.border_style = border_style
        self.max_chars = max_chars
        self.console = console or default_console
        self._full_text = ""
        self._final_chunk: Optional[StreamChunkInfo] = None
        self._live: Optional[Live] = None

    def __enter__(self) -> "RichStreamPrinter":
        self.start()
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def start(self) -> None:
        """Reset the buffer and open the live display."""
        self._full_text = ""
        self._final_chunk = None
        if self._live is None:
            self._live = Live(
                Panel("", border_style=self.border_style),
                refresh_per_second=self.refresh_rate,
                console=self.console,
            )
            self._live.start()

    def close(self) -> None:
        if self._live is not None:
            self._live.stop()
            self._live = None

    def __call__(self, chunk: StreamChunkInfo) -> bool:
        """
        Handle one stream event.

        Returns:
            bool: False once ``max_chars`` is reached, asking the client to stop.
        """
        if self._live is None:
            self.start()

        self._full_text += chunk.content
        if chunk.is_complete:
            self._final_chunk = chunk
        self._update_display(is_final=chunk.is_complete)

        if chunk.is_complete:
            self.close()
            return True
        if self.max_chars is not None and len(self._full_text) >= self.max_chars:
            self._final_chunk = chunk
            self._update_display(is_final=True)
            self.close()
            return False
        return True

    def _update_display(self, is_final: bool = False) -> None:
        """Update the Live display with current content."""
        if self._live is None:
            return
        self._live.update(
            Panel(
                self._build_content(is_final),
                title=self._build_title(is_final),
                border_style="green" if is_final else self.border_style,
                padding=(1, 2),
            )
        )

    def _build_title(self, is_final: bool) -> str:
        """Build the panel title."""
        title_parts = []

        if is_final and self.show_final_title:
            title_parts.append("[bold]Final Response[/bold]")
        else:
            title_parts.append(f"[bold]{self.title}[/bold]")

        if self.provider:
            title_parts.append(f"[dim]({self.provider})[/dim]")

        return " ".join(title_parts)

    def _build_content(self, is_final: bool) -> Any:
        """Build the panel content."""
        if not self._full_text.strip():
            return Text("(waiting for response...)", style="dim italic")

        markdown = Markdown(
            self._full_text,
            code_theme=self.code_theme,
            inline_code_theme=self.inline_code_theme,
        )

        if is_final and self.show_metadata and self._final_chunk:
            metrics = {
                "chunks": self._final_chunk.chunk_index,
                "bytes": self._final_chunk.total_bytes,
                "elapsed_ms": self._final_chunk.elapsed_ms,
            }
            metadata_panel = Panel(
                Syntax(
                    json.dumps(metrics, indent=2),
                    "json",
                    theme="lightbulb",
                    background_color="default",
                ),
                title="[bold]Metadata[/bold]",
                border_style="dim",
            )
            return Group(markdown, metadata_panel)

        return markdown

    def get_full_text(self) -> str:
        """Get the full assembled text."""
        return self._full_text

    def get_final_chunk(self) -> Optional[StreamChunkInfo]:
        """Get the completing chunk if the stream finished."""
        return self._final_chunk
