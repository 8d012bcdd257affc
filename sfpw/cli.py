"""Typer CLI entrypoint."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any

import typer

from sfpw.core.config import load_config
from sfpw.core.archive import list_members
from sfpw.core.errors import ArchiveError, SfpwError
from sfpw.core.model import TransferProgress
from sfpw.core.service import DeviceService, connect
from sfpw.firmware.passdb import PasswordDatabase, PasswordEntry, load_password_database

app = typer.Typer(help="SFP Wizard control over BLE and firmware password extraction")
module_app = typer.Typer(help="Inserted module EEPROM")
snapshot_app = typer.Typer(help="Snapshot buffer")
fw_app = typer.Typer(help="Device firmware")
support_app = typer.Typer(help="Support archive and device logs")
app.add_typer(module_app, name="module")
app.add_typer(snapshot_app, name="snapshot")
app.add_typer(fw_app, name="fw")
app.add_typer(support_app, name="support")

AddressOption = typer.Option(..., "--address", "-a", envvar="SFPW_ADDRESS", help="Device BLE address")


@app.callback()
def main(verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging")) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="[%(levelname)s] %(name)s: %(message)s",
    )


def _build_service(address: str) -> DeviceService:
    loaded = load_config()
    for key in loaded.overrides:
        typer.echo(f"Config: using user value for {key}", err=True)
    return connect(address, config=loaded.config)


def _echo_json(doc: Any) -> None:
    typer.echo(json.dumps(doc, indent=2, sort_keys=True))


def _progress(update: TransferProgress) -> None:
    typer.echo(
        f"\r  {update.phase}: {update.current}/{update.total} ({update.fraction * 100:.1f}%)",
        nl=False,
        err=True,
    )


def _fail(exc: SfpwError) -> typer.Exit:
    typer.echo(f"Error: {exc}", err=True)
    return typer.Exit(code=1)


def _write_output(path: Path, data: bytes) -> None:
    try:
        path.write_bytes(data)
    except OSError as exc:
        typer.echo(f"Error: cannot write {path}: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("info")
def device_info(address: str = AddressOption) -> None:
    """Show device identity and firmware version."""
    try:
        service = _build_service(address)
        try:
            info = service.device_info()
        finally:
            service.close()
        typer.echo(f"ID: {info.id}")
        typer.echo(f"Firmware: v{info.fw_version}")
        typer.echo(f"API: {info.api_version}")
        if info.hw_version is not None:
            typer.echo(f"Hardware: {info.hw_version}")
    except SfpwError as exc:
        raise _fail(exc) from None


@app.command("stats")
def stats(address: str = AddressOption) -> None:
    """Show battery, uptime, and signal statistics."""
    try:
        service = _build_service(address)
        try:
            result = service.stats()
        finally:
            service.close()
        low = " (low)" if result.is_low_battery else ""
        typer.echo(f"Battery: {result.battery}% ({result.battery_v:.2f} V){low}")
        typer.echo(f"Uptime: {result.uptime}s")
        typer.echo(f"Signal: {result.signal_dbm} dBm")
    except SfpwError as exc:
        raise _fail(exc) from None


@app.command("settings")
def settings(address: str = AddressOption) -> None:
    """Print device settings as JSON."""
    try:
        service = _build_service(address)
        try:
            _echo_json(service.settings())
        finally:
            service.close()
    except SfpwError as exc:
        raise _fail(exc) from None


@app.command("reboot")
def reboot(address: str = AddressOption) -> None:
    """Reboot the device."""
    try:
        service = _build_service(address)
        try:
            service.reboot()
        finally:
            service.close()
        typer.echo("Reboot initiated")
    except SfpwError as exc:
        raise _fail(exc) from None


@app.command("bt")
def bluetooth(address: str = AddressOption) -> None:
    """Print Bluetooth parameters as JSON."""
    try:
        service = _build_service(address)
        try:
            _echo_json(service.bluetooth())
        finally:
            service.close()
    except SfpwError as exc:
        raise _fail(exc) from None


def _print_archive(data: bytes) -> None:
    typer.echo("Archive contents:")
    try:
        members = list_members(data)
    except ArchiveError as exc:
        typer.echo(f"Error reading tar: {exc}")
        return
    for member in members:
        typer.echo(f"  {member.format_size()}  {member.name}")
        if member.is_eeprom and not member.module_present:
            typer.echo("           (no module)")


@support_app.command("dump")
@app.command("support-dump", hidden=True)
def support_dump(output: Path, address: str = AddressOption) -> None:
    """Download the support archive (syslog and module database) to OUTPUT."""
    try:
        service = _build_service(address)
        try:
            data = service.read_sif(progress=_progress)
        finally:
            service.close()
        typer.echo(err=True)
        _write_output(output, data)
        typer.echo(f"Wrote {len(data)} bytes to {output}")
        _print_archive(data)
    except SfpwError as exc:
        raise _fail(exc) from None


@support_app.command("logs")
def support_logs(address: str = AddressOption) -> None:
    """Print the device syslog from the support archive."""
    try:
        service = _build_service(address)
        try:
            syslog = service.read_syslog()
        finally:
            service.close()
    except SfpwError as exc:
        raise _fail(exc) from None
    if syslog is None:
        typer.echo("No syslog found in archive")
        return
    typer.echo(syslog.decode("utf-8", errors="replace"), nl=False)


@module_app.command("details")
def module_details(address: str = AddressOption) -> None:
    """Show identity of the inserted module."""
    try:
        service = _build_service(address)
        try:
            details = service.module_details()
        finally:
            service.close()
        if not details.present:
            typer.echo("No module detected")
            raise typer.Exit(code=1)
        typer.echo(f"Vendor: {details.vendor}")
        typer.echo(f"Part number: {details.part_number}")
        typer.echo(f"Serial: {details.sn}")
        typer.echo(f"Revision: {details.rev}")
        if details.compliance:
            typer.echo(f"Compliance: {details.compliance}")
    except SfpwError as exc:
        raise _fail(exc) from None


@module_app.command("read")
def module_read(output: Path, address: str = AddressOption) -> None:
    """Read the inserted module's EEPROM to OUTPUT."""
    try:
        service = _build_service(address)
        try:
            data = service.read_module()
        finally:
            service.close()
        _write_output(output, data)
        typer.echo(f"Wrote {len(data)} bytes to {output}")
    except SfpwError as exc:
        raise _fail(exc) from None


@snapshot_app.command("info")
def snapshot_info(address: str = AddressOption) -> None:
    """Show what the snapshot buffer holds."""
    try:
        service = _build_service(address)
        try:
            info = service.snapshot_info()
        finally:
            service.close()
        if not info.has_data:
            typer.echo("Snapshot buffer is empty")
            return
        typer.echo(f"Size: {info.size} bytes (chunk {info.chunk})")
        if info.part_number or info.vendor:
            typer.echo(f"Module: {info.vendor} {info.part_number} {info.sn}".rstrip())
    except SfpwError as exc:
        raise _fail(exc) from None


@snapshot_app.command("read")
def snapshot_read(output: Path, address: str = AddressOption) -> None:
    """Read the snapshot buffer to OUTPUT."""
    try:
        service = _build_service(address)
        try:
            data = service.read_snapshot()
        finally:
            service.close()
        _write_output(output, data)
        typer.echo(f"Wrote {len(data)} bytes to {output}")
    except SfpwError as exc:
        raise _fail(exc) from None


@snapshot_app.command("write")
def snapshot_write(source: Path, address: str = AddressOption) -> None:
    """Stage EEPROM data from SOURCE in the snapshot buffer."""
    try:
        data = source.read_bytes()
    except OSError as exc:
        typer.echo(f"Error: cannot read {source}: {exc}", err=True)
        raise typer.Exit(code=1) from None
    try:
        service = _build_service(address)
        try:
            service.write_snapshot(data)
        finally:
            service.close()
        typer.echo(f"Wrote {len(data)} bytes to snapshot buffer")
    except SfpwError as exc:
        raise _fail(exc) from None


@fw_app.command("status")
def fw_status(address: str = AddressOption) -> None:
    """Show firmware version and update state."""
    try:
        service = _build_service(address)
        try:
            status = service.firmware_status()
        finally:
            service.close()
        typer.echo(f"Firmware: v{status.fw_version} (hw: {status.hw_version})")
        typer.echo(f"Status: {status.status}")
        if status.is_updating:
            typer.echo(f"Updating: {status.progress_percent}% ({status.remaining_time}s remaining)")
    except SfpwError as exc:
        raise _fail(exc) from None


@fw_app.command("update")
def fw_update(
    image: Path,
    address: str = AddressOption,
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip the confirmation prompt"),
    force: bool = typer.Option(False, "--force", help="Abort an update already in progress"),
) -> None:
    """Upload and install firmware from IMAGE."""
    try:
        data = image.read_bytes()
    except OSError as exc:
        typer.echo(f"Error: cannot read {image}: {exc}", err=True)
        raise typer.Exit(code=1) from None
    if not yes:
        typer.confirm(
            f"Flash {len(data)} bytes from {image}? Do not disconnect power or BLE during the update",
            abort=True,
        )
    try:
        service = _build_service(address)
        try:
            service.update_firmware(data, force=force, progress=_progress)
            typer.echo(err=True)
            typer.echo("Firmware uploaded; waiting for installation")
            status = service.wait_for_install(progress=_progress)
        finally:
            service.close()
        typer.echo(err=True)
        if status is None:
            typer.echo("Connection dropped; the device is probably rebooting into the new firmware")
        elif status.status in ("finished", "complete"):
            typer.echo(f"Firmware update complete: v{status.fw_version}")
        else:
            typer.echo(f"Update finished with status: {status.status}")
    except SfpwError as exc:
        raise _fail(exc) from None


@fw_app.command("abort")
def fw_abort(address: str = AddressOption) -> None:
    """Abort a firmware update in progress."""
    try:
        service = _build_service(address)
        try:
            service.abort_firmware_update()
        finally:
            service.close()
        typer.echo("Firmware update aborted")
    except SfpwError as exc:
        raise _fail(exc) from None


def _entry_line(entry: PasswordEntry) -> str:
    parts = [f"{entry.part_number:<24}", entry.format_password()]
    ascii_text = entry.password_ascii()
    if ascii_text:
        parts.append(f'"{ascii_text}"')
    if entry.read_only:
        parts.append("read-only")
    if entry.locked:
        parts.append("locked")
    parts.append(f"pages={entry.interpret_flags()}")
    if entry.cable_length is not None and entry.cable_length:
        parts.append(f"cable={entry.cable_length}")
    return "  ".join(parts)


def _print_database(db: PasswordDatabase) -> None:
    typer.echo(f"Entries: {len(db.entries)} ({db.stride}-byte stride, firmware {db.generation})")
    for entry in db.entries:
        typer.echo(_entry_line(entry))
    if db.default_entry is not None:
        typer.echo(f"Default password: {db.default_entry.format_password()}")
    typer.echo(f"Unique passwords: {len(db.unique_passwords())}")


def _password_text(entry: PasswordEntry) -> str:
    ascii_text = entry.password_ascii()
    if ascii_text:
        return f'{entry.format_password()}  "{ascii_text}"'
    return entry.format_password()


def _print_search(db: PasswordDatabase, part: str) -> None:
    candidates = db.passwords_to_try(part)
    matches = db.find_by_part_number(part)
    if matches:
        typer.echo(f"Database entries matching '{part}': {len(matches)}")
    else:
        typer.echo(f"No entries for '{part}'")

    total = len(candidates) + (1 if db.default_entry is not None else 0)
    typer.echo(f"Passwords tried for '{part}', in order: {total}")
    if total == 0:
        typer.echo("  (none)")
        return
    for index, entry in enumerate(candidates, start=1):
        typer.echo(f"  {index}. {_password_text(entry)}  pages={entry.interpret_flags()}")
    if db.default_entry is not None:
        typer.echo(f"  {len(candidates) + 1}. {_password_text(db.default_entry)}  (default)")


def _search_doc(db: PasswordDatabase, part: str) -> dict[str, Any]:
    passwords = db.passwords_to_try(part)
    if db.default_entry is not None:
        passwords.append(db.default_entry)
    return {
        "part_number": part,
        "match_count": len(db.find_by_part_number(part)),
        "password_count": len(passwords),
        "passwords": [entry.to_dict() for entry in passwords],
    }


@fw_app.command("passdb")
@app.command("passdb", hidden=True)
def passdb(
    firmware: Path,
    part: str | None = typer.Option(
        None, "--part", "--search", "-s", help="Show the unlock order for one part number"
    ),
    as_json: bool = typer.Option(False, "--json", "-j", help="Print JSON instead of text"),
) -> None:
    """Extract the module unlock-password database from a firmware image."""
    try:
        db = load_password_database(firmware)
    except OSError as exc:
        typer.echo(f"Error: cannot read {firmware}: {exc}", err=True)
        raise typer.Exit(code=1) from None
    except SfpwError as exc:
        raise _fail(exc) from None

    if part is None:
        if as_json:
            _echo_json(db.to_dict())
        else:
            _print_database(db)
    elif as_json:
        _echo_json(_search_doc(db, part))
    else:
        _print_search(db, part)


def run() -> None:
    app()


if __name__ == "__main__":
    run()
