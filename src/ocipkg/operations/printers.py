"""
Human-readable output formatting.

Centralizes all CLI output formatting so CLI commands stay thin.
"""
from __future__ import annotations

from pathlib import Path
from typing import List, Optional, Tuple

import typer
from rich.console import Console
from rich.markup import escape
from rich.table import Table
from rich.tree import Tree

from ..digest import Digest
from ..image_name import ImageName
from ..layout import Layout

_console = Console()


def print_pack_summary(layout: Layout, out_path: Path) -> None:
    """Print the archive written by `pack` and what it holds."""
    typer.echo(f"Wrote {out_path}")
    for desc, manifest in layout.manifests():
        label = desc.ref_name or "(unnamed)"
        size = sum(layer.size for layer in manifest.layers)
        typer.echo(f"  {label}: {desc.digest} ({len(manifest.layers)} layer(s), {_format_bytes(size)})")


def print_inspect(entries: List[Tuple[Optional[ImageName], List[str]]]) -> None:
    """Print each manifest of an archive as a tree of its layer files."""
    for name, files in entries:
        tree = Tree(f"[bold]{escape(str(name)) if name else 'unnamed'}[/]")
        for path in files:
            tree.add(escape(path))
        _console.print(tree)


def print_push_summary(results: List[Tuple[ImageName, Digest]]) -> None:
    for name, digest in results:
        typer.echo(f"Pushed {name} ({digest})")


def print_images(images: List[Tuple[ImageName, Path]], verbose: bool = False) -> None:
    """
    Print stored images.

    Args:
        images: (image name, local directory) pairs
        verbose: Also show local directories
    """
    if not images:
        _console.print("[dim]No images in local store[/]")
        return

    table = Table(title=f"Local images ({len(images)})")
    table.add_column("Image", style="cyan")
    if verbose:
        table.add_column("Directory", style="dim")
    for name, path in images:
        table.add_row(*([str(name), str(path)] if verbose else [str(name)]))
    _console.print(table)


def print_lines(lines: List[str]) -> None:
    for line in lines:
        typer.echo(line)


def _format_bytes(size_bytes: int) -> str:
    """
    Format byte count as human-readable string.

    Returns:
        Formatted string (e.g., "1.5 MB", "42 KB")
    """
    if size_bytes < 1024:
        return f"{size_bytes} B"
    elif size_bytes < 1024 * 1024:
        return f"{size_bytes / 1024:.1f} KB"
    elif size_bytes < 1024 * 1024 * 1024:
        return f"{size_bytes / (1024 * 1024):.1f} MB"
    else:
        return f"{size_bytes / (1024 * 1024 * 1024):.1f} GB"
