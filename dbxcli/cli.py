"""
Command-line interface for dbxcli.

Lets users and team admins list, upload, download, copy, move, delete,
search and restore files in Dropbox, and manage team members.
"""

import logging
import sys
from pathlib import Path
from typing import Dict, List, Optional

import click
from rich.columns import Columns
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.progress import (
    Progress, TextColumn, BarColumn, DownloadColumn, TransferSpeedColumn, TimeRemainingColumn,
)
from rich.table import Table

from . import __version__
from .auth import TokenStore, DEFAULT_PROFILE, PERSONAL, TEAM_ACCESS, TEAM_MANAGE
from .client import DropboxClient
from .exceptions import ApiError, ConfigurationError, DropboxError, ValidationError
from .ignore import find_ignored_paths, has_dropbox_attr, toggle_ignored
from .listing import list_directory
from .models import (
    CHUNK_SIZE_UNIT, DEFAULT_CHUNK_SIZE, DeletedMetadata, FileMetadata, FolderMetadata,
    ListOptions, Metadata, TransferProgress, mark_deleted,
)
from .transfer import download_file, upload_path
from .utils import (
    basename, humanize_date, humanize_size, join_path, parse_file_size, validate_path,
)

logger = logging.getLogger(__name__)

console = Console()
err_console = Console(stderr=True)

IGNORE_FILES_TO_SHOW = 7


class CLIContext:
    """CLI context object to share state between commands."""

    def __init__(
        self,
        token: Optional[str] = None,
        profile: str = DEFAULT_PROFILE,
        as_member: Optional[str] = None,
        token_store: Optional[TokenStore] = None,
    ):
        self.token = token
        self.profile = profile
        self.as_member = as_member
        self.token_store = token_store or TokenStore()
        self._clients: Dict[str, DropboxClient] = {}

    def resolve_token(self, domain: str) -> str:
        """Pick the access token for a domain: ``--token`` first, then the token store."""
        if self.token:
            return self.token
        token = self.token_store.get_token(self.profile, domain)
        if not token:
            raise ConfigurationError(
                f"No {domain} access token for profile '{self.profile}'. "
                f"Pass --token or add one to {self.token_store.token_file}.",
                config_key=domain,
            )
        return token

    def get_client(self, domain: Optional[str] = None) -> DropboxClient:
        """Get an authenticated client for a token domain."""
        if domain is None:
            domain = TEAM_ACCESS if self.as_member else PERSONAL
        if domain not in self._clients:
            as_member = self.as_member if domain == TEAM_ACCESS else None
            self._clients[domain] = DropboxClient(
                access_token=self.resolve_token(domain),
                as_member_id=as_member,
            )
        return self._clients[domain]


def configure_logging(verbose: bool):
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=err_console, show_path=False)],
    )


def _fail(message: str):
    err_console.print(f"❌ {escape(message)}")
    sys.exit(1)


def _transfer_progress() -> Progress:
    return Progress(
        TextColumn("[progress.description]{task.description}"),
        BarColumn(),
        DownloadColumn(binary_units=True),
        TransferSpeedColumn(),
        TimeRemainingColumn(),
        console=err_console,
    )


def _display_name(entry: Metadata, full_path: bool) -> str:
    name = entry.path_display if full_path else entry.name
    if isinstance(entry, DeletedMetadata):
        return escape(mark_deleted(name))
    return escape(name)


def _entries_table(entries: List[Metadata], full_path: bool) -> Table:
    table = Table(box=None)
    table.add_column("Revision", style="cyan")
    table.add_column("Size", style="yellow", justify="right")
    table.add_column("Last modified", style="magenta")
    table.add_column("Path", style="green")

    for entry in entries:
        if isinstance(entry, FileMetadata):
            table.add_row(
                entry.rev,
                humanize_size(entry.size),
                humanize_date(entry.server_modified),
                _display_name(entry, full_path),
            )
        else:
            table.add_row("-", "-", "-", _display_name(entry, full_path))
    return table


def _print_entries(entries: List[Metadata], long_format: bool, full_path: bool = False):
    if long_format:
        console.print(_entries_table(entries, full_path))
    elif entries:
        names = sorted(_display_name(e, full_path) for e in entries)
        console.print(Columns(names, padding=(0, 4)))


@click.group()
@click.option('--token', help='Access token (overrides the token store)')
@click.option('--profile', default=DEFAULT_PROFILE, show_default=True, help='Token store profile')
@click.option('--as-member', help='Act as this team member id (team tokens only)')
@click.option('--verbose', '-v', is_flag=True, help='Enable verbose logging')
@click.pass_context
def cli(ctx, token, profile, as_member, verbose):
    """dbxcli - a command line tool for Dropbox users and team admins."""
    configure_logging(verbose)
    ctx.obj = CLIContext(token=token, profile=profile, as_member=as_member)


@cli.command()
def version():
    """Print the version."""
    console.print(f"dbxcli version: {__version__}")


@cli.command()
@click.argument('path', required=False, default="")
@click.option('--long', '-l', 'long_format', is_flag=True, help='Long listing')
@click.option('--recurse', '-R', is_flag=True, help='Recursively list all subfolders')
@click.option('--include-deleted', '-d', is_flag=True, help='Include deleted files')
@click.option('--only-deleted', '-D', is_flag=True, help='Only show deleted files')
@click.pass_obj
def ls(obj: CLIContext, path, long_format, recurse, include_deleted, only_deleted):
    """List files and folders."""
    options = ListOptions(
        recursive=recurse,
        include_deleted=include_deleted,
        only_deleted=only_deleted,
    )
    try:
        entries = list_directory(obj.get_client(), validate_path(path), options)
    except DropboxError as e:
        _fail(f"ls failed: {e}")

    _print_entries(entries, long_format, full_path=recurse)


@cli.command()
@click.argument('source', type=click.Path(exists=True, dir_okay=False))
@click.argument('target', required=False)
@click.option('--chunksize', '-c', default=str(DEFAULT_CHUNK_SIZE), show_default=True,
              help='Chunk size to use (multiple of 4MiB, e.g. 16MiB)')
@click.pass_obj
def put(obj: CLIContext, source, target, chunksize):
    """Upload a single file.

    If TARGET is omitted the file goes to the root of your Dropbox.
    If given, TARGET is the desired file name in the cloud, not a folder.
    """
    try:
        chunk_size = parse_file_size(chunksize)
    except ValueError as e:
        _fail(str(e))
    if chunk_size <= 0 or chunk_size % CHUNK_SIZE_UNIT != 0:
        _fail("`put` requires chunk size to be a positive multiple of 4MiB")

    source = Path(source)
    dst = validate_path(target) if target else f"/{source.name}"

    try:
        client = obj.get_client()
        with _transfer_progress() as progress:
            task = progress.add_task(f"Uploading {source.name}", total=source.stat().st_size)

            def progress_callback(prog: TransferProgress):
                progress.update(task, completed=prog.transferred_bytes)

            metadata = upload_path(client, source, dst, chunk_size=chunk_size,
                                   progress_callback=progress_callback)
    except (DropboxError, OSError) as e:
        _fail(f"Upload failed: {e}")

    logger.info("[put] uploaded; path:%s;rev:%s", metadata.path_display, metadata.rev)


@cli.command()
@click.argument('source')
@click.argument('target', required=False)
@click.pass_obj
def get(obj: CLIContext, source, target):
    """Download a file."""
    src = validate_path(source)
    dst = Path(target) if target else Path(basename(src))
    if dst.is_dir():
        dst = dst / basename(src)

    try:
        client = obj.get_client()
        with _transfer_progress() as progress:
            task = progress.add_task(f"Downloading {basename(src)}", total=None)

            def progress_callback(prog: TransferProgress):
                progress.update(task, completed=prog.transferred_bytes, total=prog.total_bytes)

            download_file(client, src, dst, progress_callback=progress_callback)
    except (DropboxError, OSError) as e:
        _fail(f"Download failed: {e}")


@cli.command()
@click.argument('source')
@click.argument('target')
@click.pass_obj
def cp(obj: CLIContext, source, target):
    """Copy a file or folder."""
    try:
        obj.get_client().copy(validate_path(source), validate_path(target))
    except DropboxError as e:
        _fail(f"Copy failed: {e}")


@cli.command()
@click.argument('sources', nargs=-1, required=True)
@click.argument('target')
@click.pass_obj
def mv(obj: CLIContext, sources, target):
    """Move files.

    With several SOURCES, each one is moved into the TARGET folder.
    """
    destination = validate_path(target)
    if len(sources) == 1:
        moves = [(validate_path(sources[0]), destination)]
    else:
        moves = [(validate_path(s), join_path(destination, basename(validate_path(s)))) for s in sources]

    client = obj.get_client()
    failed = False
    for src, dst in moves:
        try:
            client.move(src, dst)
        except DropboxError as e:
            err_console.print(escape(f"Move error: {src} -> {dst}: {e}"))
            failed = True

    if failed:
        sys.exit(1)


@cli.command()
@click.argument('path')
@click.option('--recursive', '-r', is_flag=True, help='Recursive removal')
@click.pass_obj
def rm(obj: CLIContext, path, recursive):
    """Remove a file, or a folder with -r."""
    path = validate_path(path)
    try:
        client = obj.get_client()
        metadata = client.get_metadata(path)
        if isinstance(metadata, FolderMetadata) and not recursive:
            raise ValidationError(f"rm: cannot remove '{path}': Is a directory", field="path")
        client.delete(path)
    except ApiError as e:
        if e.is_not_found:
            _fail(f"rm: cannot remove '{path}': No such file or directory")
        _fail(str(e))
    except DropboxError as e:
        _fail(str(e))


@cli.command()
@click.argument('directory')
@click.pass_obj
def rmdir(obj: CLIContext, directory):
    """Remove a directory."""
    path = validate_path(directory)
    try:
        client = obj.get_client()
        metadata = client.get_metadata(path)
        if not isinstance(metadata, FolderMetadata):
            raise ValidationError(f"rmdir: failed to remove '{path}': Not a directory", field="path")
        client.delete(path)
    except ApiError as e:
        if e.is_not_found:
            _fail(f"rmdir: failed to remove '{path}': No such file or directory")
        _fail(str(e))
    except DropboxError as e:
        _fail(str(e))


@cli.command()
@click.argument('directory')
@click.pass_obj
def mkdir(obj: CLIContext, directory):
    """Create a new directory."""
    try:
        obj.get_client().create_folder(validate_path(directory))
    except DropboxError as e:
        _fail(f"mkdir failed: {e}")


@cli.command()
@click.argument('file')
@click.option('--long', '-l', 'long_format', is_flag=True, help='Long listing')
@click.option('--machine', '-m', is_flag=True, help='Machine readable file size and time')
@click.pass_obj
def revs(obj: CLIContext, file, long_format, machine):
    """List file revisions."""
    try:
        revisions = obj.get_client().list_revisions(validate_path(file))
    except DropboxError as e:
        _fail(f"revs failed: {e}")

    if machine:
        # Tab-separated, byte sizes and RFC 3339 times
        click.echo("Revision\tSize\tLast modified\tPath")
        for revision in revisions:
            modified = revision.server_modified.isoformat() if revision.server_modified else "-"
            click.echo(f"{revision.rev}\t{revision.size}\t{modified}\t{revision.path_display}")
    elif long_format:
        console.print(_entries_table(revisions, full_path=True))
    else:
        for revision in revisions:
            console.print(revision.rev)


@cli.command()
@click.argument('target')
@click.argument('revision')
@click.pass_obj
def restore(obj: CLIContext, target, revision):
    """Restore a file to a revision."""
    try:
        metadata = obj.get_client().restore(validate_path(target), revision)
    except DropboxError as e:
        _fail(f"restore failed: {e}")
    console.print(f"Restored {metadata.path_display} to revision {metadata.rev}")


@cli.command()
@click.argument('query')
@click.argument('path_scope', required=False, default="")
@click.option('--long', '-l', 'long_format', is_flag=True, help='Long listing')
@click.pass_obj
def search(obj: CLIContext, query, path_scope, long_format):
    """Search file and folder names."""
    if path_scope and not path_scope.startswith("/"):
        _fail('`search` `path-scope` must begin with "/"')
    try:
        matches = obj.get_client().search(query, validate_path(path_scope))
    except DropboxError as e:
        _fail(f"Search failed: {e}")

    if long_format:
        console.print(_entries_table(matches, full_path=True))
    else:
        for match in matches:
            console.print(escape(match.path_display))


@cli.command()
@click.pass_obj
def du(obj: CLIContext):
    """Display usage information."""
    try:
        usage = obj.get_client().get_space_usage()
    except DropboxError as e:
        _fail(f"Failed to get usage: {e}")

    console.print(f"Used: {humanize_size(usage.used)}")
    console.print(f"Type: {usage.allocation_type}")
    if usage.allocation_type == "individual":
        console.print(f"Allocated: {humanize_size(usage.allocated)}")
    elif usage.allocation_type == "team":
        console.print(f"Allocated: {humanize_size(usage.allocated)} (Used: {humanize_size(usage.team_used or 0)})")


@cli.command()
@click.argument('account_id', required=False)
@click.pass_obj
def account(obj: CLIContext, account_id):
    """Display account information."""
    table = Table(box=None, show_header=False)
    table.add_column("Property", style="cyan")
    table.add_column("Value", style="green")

    try:
        client = obj.get_client()
        if account_id is None:
            acct = client.get_current_account()
            console.print(f"Logged in as {acct.display_name} <{acct.email}>\n")
            table.add_row("Account Id:", acct.account_id)
            table.add_row("Account Type:", acct.account_type)
            table.add_row("Locale:", acct.locale)
            table.add_row("Referral Link:", acct.referral_link)
            table.add_row("Profile Photo Url:", acct.profile_photo_url or "")
            table.add_row("Paired Account:", str(acct.is_paired).lower())
            if acct.team_id:
                table.add_row("Team Name:", acct.team_name or "")
                table.add_row("Team Id:", acct.team_id)
                table.add_row("Team Member Id:", acct.team_member_id or "")
        else:
            acct = client.get_account(account_id)
            email = acct.email if acct.email_verified else f"{acct.email} (unverified)"
            table.add_row("Name:", acct.display_name)
            table.add_row("Email:", email)
            table.add_row("Is Teammate:", str(acct.is_teammate).lower())
            if acct.team_member_id:
                table.add_row("Team Member Id:", acct.team_member_id)
            table.add_row("Profile Photo URL:", acct.profile_photo_url or "")
    except DropboxError as e:
        _fail(f"Failed to get account: {e}")

    console.print(table)


@cli.command()
@click.option('--access-token', prompt=True, hide_input=True, help='Access token to store')
@click.option('--domain', type=click.Choice([PERSONAL, TEAM_ACCESS, TEAM_MANAGE]), default=PERSONAL,
              show_default=True, help='Token domain')
@click.pass_obj
def config(obj: CLIContext, access_token, domain):
    """Store an access token for the current profile."""
    try:
        obj.token_store.set_token(access_token, profile=obj.profile, domain=domain)
    except (DropboxError, OSError) as e:
        _fail(f"Failed to save token: {e}")

    console.print(f"✅ Saved {domain} token for profile '{escape(obj.profile)}'")

    # Team tokens cannot call users/get_current_account without a member
    if domain != PERSONAL:
        return
    try:
        with DropboxClient(access_token=access_token) as client:
            acct = client.get_current_account()
        console.print(f"✅ Logged in as {escape(acct.display_name)} <{escape(acct.email)}>")
    except DropboxError as e:
        console.print(f"⚠️ Token saved but connection test failed: {escape(str(e))}")


@cli.command()
@click.pass_obj
def logout(obj: CLIContext):
    """Forget the stored tokens of the current profile."""
    try:
        removed = obj.token_store.remove_profile(obj.profile)
    except (DropboxError, OSError) as e:
        _fail(f"logout failed: {e}")
    if not removed:
        _fail(f"cannot find profile '{obj.profile}'")
    console.print(f"✅ Removed tokens for profile '{escape(obj.profile)}'")


@cli.command(name='toggle-ignore')
@click.argument('path', type=click.Path(exists=True))
@click.option('--gitignore', '-g', is_flag=True,
              help='Toggle ignored files based on the contents of a .gitignore style file')
def toggle_ignore(path, gitignore):
    """Ignore a local file from Dropbox sync, or stop ignoring it."""
    try:
        if gitignore:
            targets = find_ignored_paths(Path.cwd(), path)
        else:
            targets = [Path(path)] if has_dropbox_attr(path) else []
    except (DropboxError, OSError) as e:
        _fail(f"toggle-ignore failed: {e}")

    if not targets:
        console.print("No files found...")
        return

    console.print("Toggling ignore state on the following file(s):")
    for target in targets[:IGNORE_FILES_TO_SHOW]:
        console.print(f"\t- {escape(str(target))}")
    if len(targets) > IGNORE_FILES_TO_SHOW:
        console.print(f"And {len(targets) - IGNORE_FILES_TO_SHOW} more...")

    for target in targets:
        try:
            toggle_ignored(target)
        except (DropboxError, OSError) as e:
            _fail(f"Failed to toggle {target}: {e}")


@cli.group()
def team():
    """Team management commands."""


@team.command(name='info')
@click.pass_obj
def team_info(obj: CLIContext):
    """Get team information."""
    try:
        info = obj.get_client(TEAM_MANAGE).team_get_info()
    except DropboxError as e:
        _fail(f"Failed to get team info: {e}")

    table = Table(box=None, show_header=False)
    table.add_column("Property", style="cyan")
    table.add_column("Value", style="green")
    table.add_row("Name:", info.name)
    table.add_row("Team Id:", info.team_id)
    table.add_row("Licensed Users:", str(info.num_licensed_users))
    table.add_row("Provisioned Users:", str(info.num_provisioned_users))
    console.print(table)


@team.command(name='list-members')
@click.pass_obj
def list_members(obj: CLIContext):
    """List team members."""
    try:
        members = obj.get_client(TEAM_MANAGE).team_members_list()
    except DropboxError as e:
        _fail(f"Failed to list members: {e}")

    if not members:
        return

    table = Table(title="Members")
    for column in ("Name", "Id", "Status", "Email", "Role"):
        table.add_column(column)
    for member in members:
        table.add_row(member.display_name, member.team_member_id, member.status, member.email, member.role)
    console.print(table)


@team.command(name='add-member')
@click.argument('email')
@click.argument('first_name')
@click.argument('last_name')
@click.pass_obj
def add_member(obj: CLIContext, email, first_name, last_name):
    """Add a new member to a team."""
    try:
        tag = obj.get_client(TEAM_MANAGE).team_members_add(email, first_name, last_name)
    except DropboxError as e:
        _fail(f"Failed to add member: {e}")

    if tag == "complete":
        console.print("User successfully added to the team.")
    else:
        console.print(f"Request accepted ({tag}).")


@team.command(name='remove-member')
@click.argument('email')
@click.pass_obj
def remove_member(obj: CLIContext, email):
    """Remove member from a team."""
    try:
        tag = obj.get_client(TEAM_MANAGE).team_members_remove(email)
    except DropboxError as e:
        _fail(f"Failed to remove member: {e}")

    if tag == "complete":
        console.print("User successfully removed from team.")
    else:
        console.print(f"Request accepted ({tag}).")


@team.command(name='list-groups')
@click.pass_obj
def list_groups(obj: CLIContext):
    """List groups."""
    try:
        groups = obj.get_client(TEAM_MANAGE).team_groups_list()
    except DropboxError as e:
        _fail(f"Failed to list groups: {e}")

    if not groups:
        return

    table = Table(title="Groups")
    for column in ("Name", "Id", "# Members", "External Id"):
        table.add_column(column)
    for group in groups:
        table.add_row(group.group_name, group.group_id, str(group.member_count), group.group_external_id)
    console.print(table)


@cli.group()
def share():
    """Sharing commands."""


@share.command(name='create-link')
@click.argument('path')
@click.pass_obj
def create_link(obj: CLIContext, path):
    """Create a shared link, or print the existing one."""
    path = validate_path(path)
    try:
        client = obj.get_client()
        links = client.list_shared_links(path)
        link = links[0] if links else client.create_shared_link(path)
    except DropboxError as e:
        _fail(f"Failed to create link: {e}")
    console.print(f"{link.name}\t{link.url}")


@share.command(name='list-links')
@click.argument('path', required=False)
@click.pass_obj
def list_links(obj: CLIContext, path):
    """List shared links."""
    try:
        links = obj.get_client().list_shared_links(validate_path(path) if path else None)
    except DropboxError as e:
        _fail(f"Failed to list links: {e}")
    for link in links:
        console.print(f"{link.path_lower or link.name}\t{link.url}")


@share.command(name='list-folders')
@click.pass_obj
def list_folders(obj: CLIContext):
    """List shared folders."""
    try:
        folders = obj.get_client().list_shared_folders()
    except DropboxError as e:
        _fail(f"Failed to list shared folders: {e}")
    for folder in folders:
        console.print(f"{folder.name}\t{folder.access_type}\t{folder.shared_folder_id}")


@share.command(name='list-files')
@click.pass_obj
def list_files(obj: CLIContext):
    """List files shared with you."""
    try:
        files = obj.get_client().list_received_files()
    except DropboxError as e:
        _fail(f"Failed to list shared files: {e}")
    for shared in files:
        console.print(f"{shared.name}\t{shared.access_type}\t{shared.preview_url}")


def main():
    cli()


if __name__ == '__main__':
    main()
