"""
CLI interface for vault collections.

Usage:
    vaultbox vault create "Books"
    vaultbox field add 1 Rating number --min 0 --max 10
    vaultbox entry add 1 "Dune" --set Rating=9
    vaultbox search 1 "dun"
"""

import atexit
import dataclasses
import json
import os
from pathlib import Path
from typing import Any, Optional

import typer
from typing_extensions import Annotated

from .api import VaultManager
from .errors import MalformedInput, VaultboxError, log_exception
from .logging_config import configure_quiet_mode, enable_debug_mode
from .metadata import build_metadata_json, load_json_value, parse_metadata
from .types import (
    Entry,
    EntryUpdate,
    FieldDefinition,
    FieldOptions,
    FieldUpdate,
    RelationRef,
    ResolvedRelation,
    Vault,
    VaultUpdate,
)


# Configure quiet mode by default
# Set VAULTBOX_VERBOSE=1 to enable debug mode via environment
if os.environ.get("VAULTBOX_VERBOSE") == "1":
    enable_debug_mode()
else:
    configure_quiet_mode(quiet=True)


def _version_callback(value: bool):
    if value:
        from importlib.metadata import version
        print(f"vaultbox {version('vaultbox')}")
        raise typer.Exit()


def _verbose_callback(value: bool):
    if value:
        enable_debug_mode()


# Global state for CLI options
_json_output = False
_store_override: Optional[Path] = None


def _json_callback(value: bool):
    global _json_output
    _json_output = value


def _get_json_output() -> bool:
    return _json_output


def _store_callback(value: Optional[Path]):
    global _store_override
    _store_override = value


def _get_store_override() -> Optional[Path]:
    return _store_override


app = typer.Typer(
    name="vaultbox",
    help="Personal collections with custom fields, search and relations.",
    no_args_is_help=True,
    rich_markup_mode=None,
)


@app.callback()
def main_callback(
    verbose: Annotated[bool, typer.Option(
        "--verbose", "-v",
        help="Enable debug-level logging to stderr",
        callback=_verbose_callback,
        is_eager=True,
    )] = False,
    output_json: Annotated[bool, typer.Option(
        "--json", "-j",
        help="Output as JSON",
        callback=_json_callback,
        is_eager=True,
    )] = False,
    version: Annotated[Optional[bool], typer.Option(
        "--version",
        help="Show version and exit",
        callback=_version_callback,
        is_eager=True,
    )] = None,
    store: Annotated[Optional[Path], typer.Option(
        "--store", "-s",
        envvar="VAULTBOX_STORE_PATH",
        help="Path to the store directory (default: ~/.vaultbox/)",
        callback=_store_callback,
        is_eager=True,
    )] = None,
):
    """Personal collections with custom fields, search and relations."""


# -----------------------------------------------------------------------------
# Common Options
# -----------------------------------------------------------------------------

PageOption = Annotated[
    int,
    typer.Option("--page", "-p", help="Zero-based page number")
]

LimitOption = Annotated[
    Optional[int],
    typer.Option("--limit", "-n", help="Maximum results to return")
]

YesOption = Annotated[
    bool,
    typer.Option("--yes", "-y", help="Don't ask for confirmation")
]

SetOption = Annotated[
    Optional[list[str]],
    typer.Option(
        "--set",
        help="Field value as name=value (value parsed as JSON if possible, repeatable)",
    )
]

MetaOption = Annotated[
    Optional[str],
    typer.Option("--meta", "-m", help="Raw metadata JSON keyed by field id")
]


# -----------------------------------------------------------------------------
# Helpers
# -----------------------------------------------------------------------------

def _get_manager() -> VaultManager:
    """Open the store, handling errors gracefully."""
    try:
        vm = VaultManager(_get_store_override())
        atexit.register(vm.close)
        return vm
    except (VaultboxError, OSError, ValueError) as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)


def _fail(e: VaultboxError, context: str) -> None:
    """Report a vaultbox error: clean message for the user, traceback to the log."""
    log_exception(e, context=f"vaultbox {context}", store_path=_get_store_override())
    if _get_json_output():
        typer.echo(json.dumps({"error": e.to_dict()}), err=True)
    else:
        typer.echo(f"Error: {e}", err=True)
        if isinstance(getattr(e, "errors", None), list) and len(e.errors) > 1:
            for error in e.errors:
                typer.echo(f"  - {error}", err=True)
    raise typer.Exit(1)


def _emit(data: Any, text: str) -> None:
    """Print JSON in --json mode, the text rendering otherwise."""
    if _get_json_output():
        typer.echo(json.dumps(data, indent=2, ensure_ascii=False))
    elif text:
        typer.echo(text)


def _parse_value(raw: str) -> Any:
    """JSON if it parses (numbers, booleans, objects), else the raw string."""
    try:
        return load_json_value(raw)
    except ValueError:
        return raw


def _parse_assignments(
    fields: list[FieldDefinition],
    assignments: Optional[list[str]],
) -> dict[int, Any]:
    """Map name=value pairs to field id → value."""
    if not assignments:
        return {}
    by_name = {f.name.casefold(): f for f in fields}
    values = {}
    for item in assignments:
        if "=" not in item:
            raise MalformedInput(f"Invalid field assignment '{item}'. Use name=value")
        name, raw = item.split("=", 1)
        field = by_name.get(name.strip().casefold())
        if field is None:
            raise MalformedInput(f"Unknown field '{name.strip()}'")
        values[field.id] = None if raw == "" else _parse_value(raw)
    return values


def _compose_metadata(
    vm: VaultManager,
    vault_id: int,
    meta: Optional[str],
    assignments: Optional[list[str]],
    base: Optional[str] = None,
) -> Optional[str]:
    """Build metadata JSON from --meta and --set options, over base."""
    if meta is None and not assignments:
        return None
    if meta is not None and not assignments:
        return meta
    if meta is not None:
        values = parse_metadata(meta, strict=True)
    else:
        values = parse_metadata(base)
    values.update(_parse_assignments(vm.list_fields(vault_id), assignments))
    return build_metadata_json(values)


def _format_vault(vault: Vault) -> str:
    line = f"{vault.id}: {vault.name}"
    if vault.description:
        line += f"  {vault.description}"
    return line


def _format_entry_line(entry: Entry) -> str:
    line = f"{entry.id}  {entry.created_at[:10]}  {entry.title}"
    if entry.cover_image_path:
        line += "  [cover]"
    return line


def _format_field(field: FieldDefinition) -> str:
    line = f"{field.id}: {field.name} ({field.field_type.value})"
    if field.required:
        line += " required"
    if field.options is not None and not field.options.is_empty():
        line += f"  {json.dumps(field.options.to_dict(), ensure_ascii=False)}"
    return line


def _format_relation(rel: ResolvedRelation) -> str:
    where = rel.vault_name or f"vault {rel.vault_id}"
    return f"{rel.entry_id}:{rel.vault_id}  {rel.title}  ({where})"


def _render_entry(
    entry: Entry,
    fields: list[FieldDefinition],
    relations: dict[str, ResolvedRelation],
) -> str:
    """Entry detail with field values by name; relations shown by title."""
    lines = [f"id: {entry.id}", f"vault: {entry.vault_id}", f"title: {entry.title}"]
    if entry.description:
        lines.append(f"description: {entry.description}")
    if entry.cover_image_path:
        lines.append(f"cover: {entry.cover_image_path}")
    values = parse_metadata(entry.metadata)
    for field in fields:
        if field.id not in values:
            continue
        value = values[field.id]
        try:
            ref = RelationRef.from_value(value)
        except ValueError:
            shown = json.dumps(value, ensure_ascii=False) if not isinstance(value, str) else value
        else:
            rel = relations.get(ref.key)
            shown = _format_relation(rel) if rel else ref.key
        lines.append(f"{field.name}: {shown}")
    lines.append(f"created: {entry.created_at}")
    lines.append(f"updated: {entry.updated_at}")
    return "\n".join(lines)


def _confirm(message: str, yes: bool) -> None:
    if not yes and not typer.confirm(message):
        raise typer.Exit(0)


# -----------------------------------------------------------------------------
# Vaults
# -----------------------------------------------------------------------------

vault_app = typer.Typer(
    name="vault",
    help="Create, list and manage vaults.",
    no_args_is_help=True,
    rich_markup_mode=None,
)
app.add_typer(vault_app)


@vault_app.command("create")
def vault_create(
    name: Annotated[str, typer.Argument(help="Vault name")],
    description: Annotated[Optional[str], typer.Option("--description", "-d")] = None,
    icon: Annotated[Optional[str], typer.Option("--icon")] = None,
    color: Annotated[Optional[str], typer.Option("--color")] = None,
):
    """Create a vault."""
    vm = _get_manager()
    try:
        vault = vm.create_vault(name, description, icon, color)
    except VaultboxError as e:
        _fail(e, "vault create")
    _emit(vault.to_dict(), _format_vault(vault))


@vault_app.command("list")
def vault_list():
    """List vaults, newest first."""
    vm = _get_manager()
    vaults = vm.list_vaults()
    _emit([v.to_dict() for v in vaults], "\n".join(_format_vault(v) for v in vaults))


@vault_app.command("get")
def vault_get(
    vault_id: Annotated[int, typer.Argument(help="Vault id")],
):
    """Show a vault."""
    vm = _get_manager()
    try:
        vault = vm.get_vault(vault_id)
        count = vm.count_entries(vault_id)
    except VaultboxError as e:
        _fail(e, "vault get")
    data = vault.to_dict()
    data["entry_count"] = count
    _emit(data, f"{_format_vault(vault)}\n{count} entries")


@vault_app.command("update")
def vault_update(
    vault_id: Annotated[int, typer.Argument(help="Vault id")],
    name: Annotated[Optional[str], typer.Option("--name")] = None,
    description: Annotated[Optional[str], typer.Option("--description", "-d")] = None,
    icon: Annotated[Optional[str], typer.Option("--icon")] = None,
    color: Annotated[Optional[str], typer.Option("--color")] = None,
):
    """Rename or restyle a vault."""
    vm = _get_manager()
    try:
        vault = vm.update_vault(vault_id, VaultUpdate(name, description, icon, color))
    except VaultboxError as e:
        _fail(e, "vault update")
    _emit(vault.to_dict(), _format_vault(vault))


@vault_app.command("delete")
def vault_delete(
    vault_id: Annotated[int, typer.Argument(help="Vault id")],
    yes: YesOption = False,
):
    """Delete a vault with all its entries and fields."""
    vm = _get_manager()
    try:
        vault = vm.get_vault(vault_id)
        _confirm(f"Delete vault '{vault.name}' and all its entries?", yes)
        vm.delete_vault(vault_id)
    except VaultboxError as e:
        _fail(e, "vault delete")
    _emit({"deleted": vault_id}, f"Deleted vault {vault_id}")


# -----------------------------------------------------------------------------
# Entries
# -----------------------------------------------------------------------------

entry_app = typer.Typer(
    name="entry",
    help="Add, show and edit entries.",
    no_args_is_help=True,
    rich_markup_mode=None,
)
app.add_typer(entry_app)


@entry_app.command("add")
def entry_add(
    vault_id: Annotated[int, typer.Argument(help="Vault id")],
    title: Annotated[str, typer.Argument(help="Entry title")],
    description: Annotated[Optional[str], typer.Option("--description", "-d")] = None,
    meta: MetaOption = None,
    set_values: SetOption = None,
):
    """Add an entry to a vault."""
    vm = _get_manager()
    try:
        metadata = _compose_metadata(vm, vault_id, meta, set_values)
        entry = vm.create_entry(vault_id, title, description, metadata)
    except VaultboxError as e:
        _fail(e, "entry add")
    _emit(entry.to_dict(), _format_entry_line(entry))


@entry_app.command("get")
def entry_get(
    entry_id: Annotated[int, typer.Argument(help="Entry id")],
):
    """Show an entry with its field values."""
    vm = _get_manager()
    try:
        entry = vm.get_entry(entry_id)
        fields = vm.list_fields(entry.vault_id)
        relations = vm.resolve_entry_relations(entry_id)
    except VaultboxError as e:
        _fail(e, "entry get")
    data = entry.to_dict()
    data["relations"] = {k: r.to_dict() for k, r in relations.items()}
    _emit(data, _render_entry(entry, fields, relations))


@entry_app.command("list")
def entry_list(
    vault_id: Annotated[int, typer.Argument(help="Vault id")],
    page: PageOption = 0,
    limit: LimitOption = None,
):
    """List a vault's entries, newest first."""
    vm = _get_manager()
    try:
        result = vm.list_entries(vault_id, page, limit)
    except VaultboxError as e:
        _fail(e, "entry list")
    lines = [_format_entry_line(e) for e in result.entries]
    if result.has_more:
        lines.append(f"... more on page {result.page + 1} ({result.total} total)")
    _emit(result.to_dict(), "\n".join(lines))


@entry_app.command("update")
def entry_update(
    entry_id: Annotated[int, typer.Argument(help="Entry id")],
    title: Annotated[Optional[str], typer.Option("--title", "-t")] = None,
    description: Annotated[Optional[str], typer.Option("--description", "-d")] = None,
    meta: MetaOption = None,
    set_values: SetOption = None,
):
    """Edit an entry. --set values are merged into its metadata."""
    vm = _get_manager()
    try:
        entry = vm.get_entry(entry_id)
        metadata = _compose_metadata(vm, entry.vault_id, meta, set_values, base=entry.metadata)
        entry = vm.update_entry(entry_id, EntryUpdate(title, description, metadata))
    except VaultboxError as e:
        _fail(e, "entry update")
    _emit(entry.to_dict(), _format_entry_line(entry))


@entry_app.command("delete")
def entry_delete(
    entry_id: Annotated[int, typer.Argument(help="Entry id")],
    yes: YesOption = False,
):
    """Delete an entry and its cover image."""
    vm = _get_manager()
    try:
        entry = vm.get_entry(entry_id)
        _confirm(f"Delete entry '{entry.title}'?", yes)
        vm.delete_entry(entry_id)
    except VaultboxError as e:
        _fail(e, "entry delete")
    _emit({"deleted": entry_id}, f"Deleted entry {entry_id}")


@entry_app.command("cover")
def entry_cover(
    entry_id: Annotated[int, typer.Argument(help="Entry id")],
    file: Annotated[Optional[Path], typer.Option(
        "--file", "-f", help="Image file to store as the cover",
    )] = None,
    url: Annotated[Optional[str], typer.Option(
        "--url", "-u", help="Image URL to use as the cover",
    )] = None,
    remove: Annotated[bool, typer.Option("--remove", help="Remove the cover")] = False,
):
    """Set, remove or show an entry's cover image."""
    chosen = sum([file is not None, url is not None, remove])
    if chosen > 1:
        typer.echo("Error: use only one of --file, --url or --remove", err=True)
        raise typer.Exit(1)

    vm = _get_manager()
    try:
        if file is not None:
            entry = vm.set_cover_from_file(entry_id, file)
        elif url is not None:
            entry = vm.set_cover_from_url(entry_id, url)
        elif remove:
            entry = vm.remove_cover(entry_id)
        else:
            location = vm.get_cover_path(entry_id)
            _emit({"entry_id": entry_id, "cover": str(location)}, str(location))
            return
    except VaultboxError as e:
        _fail(e, "entry cover")
    _emit(entry.to_dict(), f"{entry.id}: cover {entry.cover_image_path or 'removed'}")


# -----------------------------------------------------------------------------
# Field definitions
# -----------------------------------------------------------------------------

field_app = typer.Typer(
    name="field",
    help="Define a vault's custom fields.",
    no_args_is_help=True,
    rich_markup_mode=None,
)
app.add_typer(field_app)

MaxLengthOption = Annotated[Optional[int], typer.Option("--max-length", help="Text: maximum length")]
MinOption = Annotated[Optional[float], typer.Option("--min", help="Number: minimum value")]
MaxOption = Annotated[Optional[float], typer.Option("--max", help="Number: maximum value")]
ChoiceOption = Annotated[Optional[list[str]], typer.Option(
    "--choice", help="Select: an allowed value (repeatable)",
)]
TargetVaultOption = Annotated[Optional[int], typer.Option(
    "--target-vault", help="Relation: vault the referenced entries live in",
)]


def _option_changes(
    max_length: Optional[int],
    min_value: Optional[float],
    max_value: Optional[float],
    choices: Optional[list[str]],
    target_vault: Optional[int],
) -> dict[str, Any]:
    changes = {
        "max_length": max_length,
        "min": min_value,
        "max": max_value,
        "choices": list(choices) if choices else None,
        "target_vault_id": target_vault,
    }
    return {k: v for k, v in changes.items() if v is not None}


@field_app.command("add")
def field_add(
    vault_id: Annotated[int, typer.Argument(help="Vault id")],
    name: Annotated[str, typer.Argument(help="Field name")],
    field_type: Annotated[str, typer.Argument(
        help="text, number, date, url, boolean, select or relation",
    )],
    required: Annotated[bool, typer.Option("--required", help="Entries must set this field")] = False,
    max_length: MaxLengthOption = None,
    min_value: MinOption = None,
    max_value: MaxOption = None,
    choices: ChoiceOption = None,
    target_vault: TargetVaultOption = None,
):
    """Add a field to a vault's schema."""
    vm = _get_manager()
    changes = _option_changes(max_length, min_value, max_value, choices, target_vault)
    try:
        options = FieldOptions(**changes) if changes else None
        field = vm.create_field(vault_id, name, field_type, options, required)
    except VaultboxError as e:
        _fail(e, "field add")
    _emit(field.to_dict(), _format_field(field))


@field_app.command("list")
def field_list(
    vault_id: Annotated[int, typer.Argument(help="Vault id")],
):
    """List a vault's fields in display order."""
    vm = _get_manager()
    try:
        fields = vm.list_fields(vault_id)
    except VaultboxError as e:
        _fail(e, "field list")
    _emit([f.to_dict() for f in fields], "\n".join(_format_field(f) for f in fields))


@field_app.command("update")
def field_update(
    field_id: Annotated[int, typer.Argument(help="Field id")],
    name: Annotated[Optional[str], typer.Option("--name", help="New field name")] = None,
    required: Annotated[Optional[bool], typer.Option(
        "--required/--optional", help="Whether entries must set this field",
    )] = None,
    max_length: MaxLengthOption = None,
    min_value: MinOption = None,
    max_value: MaxOption = None,
    choices: ChoiceOption = None,
    target_vault: TargetVaultOption = None,
):
    """Rename a field or change its options. Options not given are kept."""
    vm = _get_manager()
    try:
        field = vm.get_field(field_id)
        changes = _option_changes(max_length, min_value, max_value, choices, target_vault)
        options = None
        if changes:
            options = dataclasses.replace(field.options or FieldOptions(), **changes)
        field = vm.update_field(field_id, FieldUpdate(name, options, required))
    except VaultboxError as e:
        _fail(e, "field update")
    _emit(field.to_dict(), _format_field(field))


@field_app.command("delete")
def field_delete(
    field_id: Annotated[int, typer.Argument(help="Field id")],
    yes: YesOption = False,
):
    """Delete a field. Stored values are dropped as entries are edited."""
    vm = _get_manager()
    try:
        field = vm.get_field(field_id)
        _confirm(f"Delete field '{field.name}'?", yes)
        vm.delete_field(field_id)
    except VaultboxError as e:
        _fail(e, "field delete")
    _emit({"deleted": field_id}, f"Deleted field {field_id}")


@field_app.command("reorder")
def field_reorder(
    vault_id: Annotated[int, typer.Argument(help="Vault id")],
    field_ids: Annotated[list[int], typer.Argument(help="Field ids in the new order")],
):
    """Set the display order of a vault's fields."""
    vm = _get_manager()
    try:
        fields = vm.reorder_fields(vault_id, field_ids)
    except VaultboxError as e:
        _fail(e, "field reorder")
    _emit([f.to_dict() for f in fields], "\n".join(_format_field(f) for f in fields))


# -----------------------------------------------------------------------------
# Search, validation and relations
# -----------------------------------------------------------------------------

@app.command()
def search(
    vault_id: Annotated[int, typer.Argument(help="Vault id")],
    query: Annotated[str, typer.Argument(help="Words to match (prefixes)")],
    page: PageOption = 0,
    limit: LimitOption = None,
):
    """Full-text search over titles and descriptions."""
    vm = _get_manager()
    try:
        results = vm.search(vault_id, query, page, limit)
    except VaultboxError as e:
        _fail(e, "search")
    if not results.entries and not _get_json_output():
        typer.echo("No results.")
        return
    lines = [_format_entry_line(e) for e in results.entries]
    if results.has_more:
        lines.append(f"... more on page {results.page + 1} ({results.total} total)")
    _emit(results.to_dict(), "\n".join(lines))


@app.command()
def validate(
    vault_id: Annotated[int, typer.Argument(help="Vault id")],
    metadata: Annotated[Optional[str], typer.Argument(help="Metadata JSON keyed by field id")] = None,
    required_only: Annotated[bool, typer.Option(
        "--required-only", help="Only check that required fields are set",
    )] = False,
):
    """Check metadata against a vault's fields. Exits 1 if invalid."""
    vm = _get_manager()
    try:
        vm.get_vault(vault_id)
        if required_only:
            result = vm.validate_required_fields(vault_id, metadata)
        else:
            result = vm.validate_metadata(vault_id, metadata)
    except VaultboxError as e:
        _fail(e, "validate")
    lines = [f"error: {e}" for e in result.errors] + [f"warning: {w}" for w in result.warnings]
    lines.append("valid" if result.is_valid else "invalid")
    _emit(result.to_dict(), "\n".join(lines))
    if not result.is_valid:
        raise typer.Exit(1)


@app.command()
def cleanup(
    vault_id: Annotated[int, typer.Argument(help="Vault id")],
    metadata: Annotated[str, typer.Argument(help="Metadata JSON keyed by field id")],
):
    """Print metadata with keys of deleted fields removed."""
    vm = _get_manager()
    try:
        vm.get_vault(vault_id)
        cleaned = vm.cleanup_orphan_data(vault_id, metadata)
    except VaultboxError as e:
        _fail(e, "cleanup")
    _emit({"metadata": cleaned}, cleaned)


def _parse_ref(text: str) -> RelationRef:
    """Parse "<entry_id>:<vault_id>"."""
    entry_part, sep, vault_part = text.partition(":")
    try:
        if not sep:
            raise ValueError(text)
        return RelationRef(entry_id=int(entry_part), vault_id=int(vault_part))
    except ValueError:
        raise MalformedInput(f"Invalid relation '{text}'. Use entry_id:vault_id")


@app.command()
def resolve(
    refs: Annotated[Optional[list[str]], typer.Argument(
        help="References as entry_id:vault_id",
    )] = None,
    entry: Annotated[Optional[int], typer.Option(
        "--entry", "-e", help="Resolve every relation stored in this entry",
    )] = None,
):
    """Resolve relation references to entry titles."""
    if not refs and entry is None:
        typer.echo("Error: give references or --entry", err=True)
        raise typer.Exit(1)

    vm = _get_manager()
    try:
        resolved = {}
        if entry is not None:
            resolved.update(vm.resolve_entry_relations(entry))
        if refs:
            resolved.update(vm.resolve_relations_batch([_parse_ref(r) for r in refs]))
    except VaultboxError as e:
        _fail(e, "resolve")
    _emit(
        {k: r.to_dict() for k, r in resolved.items()},
        "\n".join(_format_relation(r) for r in resolved.values()),
    )


@app.command()
def pick(
    vault_id: Annotated[int, typer.Argument(help="Vault to pick from")],
    query: Annotated[str, typer.Argument(help="Title text to match")] = "",
    limit: LimitOption = None,
):
    """List candidate entries for a relation field."""
    vm = _get_manager()
    try:
        items = vm.search_entries_for_picker(vault_id, query, limit)
    except VaultboxError as e:
        _fail(e, "pick")
    lines = []
    for item in items:
        line = f"{item.id}  {item.title}"
        if item.subtitle:
            line += f"  - {item.subtitle}"
        lines.append(line)
    _emit([i.to_dict() for i in items], "\n".join(lines))


# -----------------------------------------------------------------------------
# Entry point
# -----------------------------------------------------------------------------

def main():
    try:
        app()
    except SystemExit:
        raise  # Let typer handle exit codes
    except KeyboardInterrupt:
        raise SystemExit(130)  # Standard exit code for Ctrl+C
    except Exception as e:
        # Log full traceback to file, show clean message to user
        log_path = log_exception(e, context="vaultbox CLI", store_path=_get_store_override())
        typer.echo(f"Error: {e}", err=True)
        typer.echo(f"Details logged to {log_path}", err=True)
        raise SystemExit(1)


if __name__ == "__main__":
    main()
