import pandas as pd
from urllib.parse import urlparse
from collections import namedtuple
import argparse
import logging
import sys
from pathlib import Path
import json
import os
import datetime
import shutil

from tqdm import tqdm

DEFAULT_INPUT_FILE = 'passwords.csv'

# Default ports are omitted from the normalized host
DEFAULT_PORTS = {'http': 80, 'https': 443}

# (option, short flag, long flag, environment variable, help, startup message)
OPTION_FLAGS = [
    ('normalize_url', '-n', '--normalize-url', 'NORMALIZE_URLS',
     'Reduce URLs to scheme + host before comparing sites',
     'URL normalization enabled (scheme+host only).'),
    ('lowercase_usernames', '-u', '--case-insensitive-usernames', 'CASE_INSENSITIVE_USERNAMES',
     'Compare usernames case-insensitively',
     'Usernames will be lowercased for dedupe.'),
    ('ignore_empty_passwords', '-p', '--ignore-empty-passwords', 'IGNORE_EMPTY_PASSWORDS',
     'Drop rows whose password is empty or whitespace',
     'Rows without passwords will be skipped.'),
    ('require_modify_time', '-m', '--prefer-modify-time', 'PREFER_MODIFY_TIME',
     'Drop rows that have no modifyTime',
     'Rows missing modifyTime will be skipped.'),
    ('overwrite_output', '-o', '--overwrite', 'OVERWRITE_OUTPUT',
     'Write the result back over the input file (a backup is made first)',
     None),
]

DedupeOptions = namedtuple(
    'DedupeOptions',
    [option for option, *_ in OPTION_FLAGS],
    defaults=(False,) * len(OPTION_FLAGS),
)
DedupeOptions.__doc__ = "Immutable switches controlling how rows are keyed and filtered."


def setup_logging(verbose=False):
    """Setup logging configuration."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(levelname)s - %(message)s',
        handlers=[
            logging.StreamHandler(sys.stdout)
        ]
    )
    return logging.getLogger(__name__)


class CSVValidationError(Exception):
    """Custom exception for CSV validation errors."""
    pass


class PasswordCSVValidator:
    """Validator for password manager CSV exports."""

    SITE_COLUMNS = ['url', 'name']

    @staticmethod
    def validate_file_exists(csv_file_path):
        """Validate that the CSV file exists and is readable."""
        path = Path(csv_file_path)
        if not path.exists():
            raise CSVValidationError(f"CSV file not found: {csv_file_path}")
        if not path.is_file():
            raise CSVValidationError(f"Path is not a file: {csv_file_path}")
        if path.stat().st_size == 0:
            raise CSVValidationError(f"CSV file is empty: {csv_file_path}")
        return True

    @staticmethod
    def check_columns(columns, options, logger=None):
        """Presence checks on the header. Returns a list of warnings, never raises."""
        warnings = []
        columns = set(columns)

        if 'username' not in columns:
            warnings.append("No 'username' column: every account key will have an empty username")
        if not columns.intersection(PasswordCSVValidator.SITE_COLUMNS):
            warnings.append("Neither 'url' nor 'name' column found: rows are keyed by username only")
        if options.ignore_empty_passwords and 'password' not in columns:
            warnings.append("No 'password' column while empty passwords are ignored: every row will be skipped")
        if options.require_modify_time and 'modifyTime' not in columns:
            warnings.append("No 'modifyTime' column while it is required: every row will be skipped")

        if logger:
            for warning in warnings:
                logger.warning(f"CSV Validation Warning: {warning}")

        return warnings


def validate_csv_file(csv_file_path, options, logger=None):
    """Validate the CSV file exists and check its header for the columns dedupe relies on."""
    PasswordCSVValidator.validate_file_exists(csv_file_path)

    try:
        header = pd.read_csv(csv_file_path, nrows=0, dtype=str, encoding='utf-8-sig')
    except (pd.errors.EmptyDataError, pd.errors.ParserError, UnicodeDecodeError, OSError) as e:
        raise CSVValidationError(f"Could not read CSV header from {csv_file_path}: {e}")

    warnings = PasswordCSVValidator.check_columns(header.columns, options, logger)

    if logger:
        logger.info(f"CSV validation passed for: {csv_file_path}")

    return warnings


def get_file_size_mb(file_path):
    """Get file size in megabytes."""
    return Path(file_path).stat().st_size / (1024 * 1024)


def read_rows(csv_file_path, chunksize=1000):
    """Lazily yield each CSV record as a dict of column name to string.

    The file is parsed in chunks so large exports are not decoded all at once.
    Every value is kept as text; missing trailing fields become empty strings
    and a surplus trailing field is dropped.
    """
    reader = pd.read_csv(
        csv_file_path,
        dtype=str,
        keep_default_na=False,
        index_col=False,
        encoding='utf-8-sig',
        on_bad_lines='warn',
        chunksize=chunksize,
    )
    with reader:
        for chunk in reader:
            for record in chunk.fillna('').to_dict('records'):
                yield record


def write_rows(rows, output_path):
    """Write rows to CSV using the first row's keys as the header."""
    if not rows:
        Path(output_path).write_text('', encoding='utf-8')
        return output_path

    columns = list(rows[0].keys())
    pd.DataFrame(rows, columns=columns).to_csv(output_path, index=False)
    return output_path


def normalize_url(value):
    """Reduce a URL or bare hostname to scheme://host.

    Values that cannot be parsed into a host fall back to the trimmed,
    lowercased input rather than raising.
    """
    if not value:
        return ''

    try:
        url_str = value if value.startswith('http') else f"https://{value}"
        # Only the assembled URL is trimmed: a leading space inside the host still fails
        url_str = url_str.strip().replace('\\', '/')
        parsed = urlparse(url_str)
        host = parsed.hostname

        if not parsed.scheme or not host or any(ch.isspace() for ch in host):
            raise ValueError(f"No usable host in {value!r}")

        if not host.isascii():
            host = host.encode('idna').decode('ascii')  # UnicodeError is a ValueError

        port = parsed.port  # raises ValueError when out of range
        if ':' in host:
            host = f"[{host}]"
        if port is not None and DEFAULT_PORTS.get(parsed.scheme) != port:
            host = f"{host}:{port}"

        return f"{parsed.scheme}://{host}"
    except ValueError:
        return value.strip().lower()


def get_timestamp(date_string):
    """Convert a date string to milliseconds since the epoch.

    Empty values count as 0. Unparseable values give NaN, which compares
    false against everything.
    """
    if not date_string:
        return 0

    parsed = pd.to_datetime(date_string, errors='coerce', utc=True)
    if pd.isna(parsed):
        return float('nan')
    return parsed.timestamp() * 1000


def row_timestamp(row):
    """Recency of a row: modifyTime when present, otherwise createTime."""
    return get_timestamp(row.get('modifyTime') or row.get('createTime'))


def account_key(row, options):
    """Build the username|site key that identifies one logical account."""
    username = (row.get('username') or '').strip()
    if options.lowercase_usernames:
        username = username.lower()

    site = row.get('url') or row.get('name')
    if options.normalize_url:
        site = normalize_url(site)
    else:
        site = (site or '').strip()

    return f"{username}|{site}"


def process(rows, options, logger=None):
    """Keep the most recently modified row per account.

    Returns the surviving rows in the order their key was first seen, and the
    number of rows that collided with an existing key.
    """
    latest_records = {}
    duplicate_count = 0

    for row_number, row in enumerate(rows, 1):
        if options.ignore_empty_passwords:
            password = row.get('password')
            if not ('' if password is None else str(password).strip()):
                if logger:
                    logger.debug(f"Row {row_number}: skipped, empty password")
                continue

        if options.require_modify_time and not row.get('modifyTime'):
            if logger:
                logger.debug(f"Row {row_number}: skipped, no modifyTime")
            continue

        key = account_key(row, options)

        if key not in latest_records:
            latest_records[key] = row
            continue

        duplicate_count += 1
        # Strictly newer only: ties and unparseable dates keep the first row seen
        if row_timestamp(row) > row_timestamp(latest_records[key]):
            latest_records[key] = row
            if logger:
                logger.debug(f"Row {row_number}: replaced an older record")
        elif logger:
            logger.debug(f"Row {row_number}: older or equal duplicate dropped")

    return list(latest_records.values()), duplicate_count


def make_cleaned_name(input_path):
    """Derive the default output name: '<name> (cleaned)<ext>'."""
    path = Path(input_path)
    return str(path.with_name(f"{path.stem} (cleaned){path.suffix or '.csv'}"))


def create_backup(original_path, logger=None):
    """Create a backup of the original file before it is overwritten."""
    try:
        path = Path(original_path)
        if not path.exists():
            raise FileNotFoundError(f"Original file not found: {original_path}")

        timestamp = datetime.datetime.now().strftime("%Y%m%d_%H%M%S")
        backup_path = path.with_name(f"{path.stem}_backup_{timestamp}{path.suffix or '.csv'}")

        shutil.copy2(path, backup_path)

        message = f"Original file backed up to: {backup_path}"
        if logger:
            logger.info(message)
        print(f"💾 {message}")

        return str(backup_path)

    except OSError as e:
        error_msg = f"Error creating backup: {e}"
        if logger:
            logger.error(error_msg)
        print(f"❌ {error_msg}")
        return None


def is_env_true(name, environ=None):
    """Treat '1' or 'true' (any case) as an enabled environment flag."""
    environ = os.environ if environ is None else environ
    value = environ.get(name)
    if not value:
        return False
    return value == '1' or value.lower() == 'true'


def default_config():
    config = {option: False for option, *_ in OPTION_FLAGS}
    config.update({
        'verbose': False,
        'dry_run': False,
        'output': None,
    })
    return config


def load_config(config_path=None):
    """Load configuration from file."""
    defaults = default_config()

    config_locations = [
        config_path,  # User specified
        os.path.expanduser('~/.pass_dedupe_config.json'),
        './pass_dedupe_config.json',
        './.pass_dedupe.json'
    ]

    for config_file in config_locations:
        if config_file and Path(config_file).exists():
            try:
                with open(config_file, 'r') as f:
                    user_config = json.load(f)
                config = {**defaults, **user_config}
                print(f"📄 Loaded configuration from: {config_file}")
                return config, config_file
            except (json.JSONDecodeError, IOError) as e:
                print(f"⚠️  Warning: Could not load config file {config_file}: {e}")
                continue

    return defaults, None


def save_config_template(config_path=None):
    """Save a configuration template file."""
    if not config_path:
        config_path = os.path.expanduser('~/.pass_dedupe_config.json')

    template_config = {
        "_comment": "Configuration file for pass_dedupe.py - remove this comment line before use",
        **default_config(),
        "_settings_info": {
            option: f"Boolean: {help_text} (flag {short_flag}/{long_flag}, env {env_name})"
            for option, short_flag, long_flag, env_name, help_text, _ in OPTION_FLAGS
        },
    }
    template_config["_settings_info"].update({
        "verbose": "Boolean: true for detailed logging",
        "dry_run": "Boolean: true to report results without writing files",
        "output": "String: custom output file path (null for '<name> (cleaned).csv')",
    })

    try:
        with open(config_path, 'w') as f:
            json.dump(template_config, f, indent=2)
        print(f"✅ Configuration template saved to: {config_path}")
        print("Edit this file to set your default preferences.")
        return config_path
    except IOError as e:
        print(f"❌ Error saving config template: {e}")
        return None


def resolve_options(args, config, environ=None):
    """Combine flags, environment variables and config file; any source can enable an option."""
    values = {}
    for option, _short, _long, env_name, _help, _message in OPTION_FLAGS:
        values[option] = bool(
            getattr(args, option, False)
            or is_env_true(env_name, environ)
            or config.get(option)
        )
    return DedupeOptions(**values)


def resolve_output_path(csv_file, options, output=None):
    if options.overwrite_output:
        return csv_file
    return output or make_cleaned_name(csv_file)


def parse_arguments(argv=None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Deduplicate password manager CSV exports, keeping the newest record per account",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Every option can also be enabled with its environment variable (set to 1 or true):
  NORMALIZE_URLS, CASE_INSENSITIVE_USERNAMES, IGNORE_EMPTY_PASSWORDS,
  PREFER_MODIFY_TIME, OVERWRITE_OUTPUT

Examples:
  %(prog)s -f passwords.csv
  %(prog)s -f passwords.csv -n -u --dry-run
  %(prog)s -f export.csv --normalize-url --ignore-empty-passwords --overwrite
  %(prog)s --save-config  # Create configuration template
"""
    )

    parser.add_argument(
        '-f', '--file',
        default=DEFAULT_INPUT_FILE,
        help=f'Path to the password CSV export (default: {DEFAULT_INPUT_FILE})'
    )

    for option, short_flag, long_flag, env_name, help_text, _ in OPTION_FLAGS:
        parser.add_argument(
            short_flag, long_flag,
            dest=option,
            action='store_true',
            help=f'{help_text} (env: {env_name})'
        )

    parser.add_argument(
        '--output',
        help="Output file path (default: '<name> (cleaned).csv' beside the input)"
    )

    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Report what would be kept without writing any file'
    )

    parser.add_argument(
        '-v', '--verbose',
        action='store_true',
        help='Enable verbose logging'
    )

    parser.add_argument(
        '--config',
        help='Path to configuration file'
    )

    parser.add_argument(
        '--save-config',
        action='store_true',
        help='Save a configuration file template and exit'
    )

    return parser.parse_args(argv)


def main(argv=None):
    """Main entry point for the script."""
    args = parse_arguments(argv)

    if args.save_config:
        if not save_config_template(args.config):
            sys.exit(1)
        return

    config, config_file = load_config(args.config)

    logger = setup_logging(args.verbose or config['verbose'])
    options = resolve_options(args, config)
    dry_run = args.dry_run or config['dry_run']
    csv_file = args.file
    output_path = resolve_output_path(csv_file, options, args.output or config['output'])

    try:
        logger.info(f"Processing file: {csv_file}")

        if config_file:
            logger.info(f"Using configuration from: {config_file}")
            logger.debug(f"Active config: {config}")

        try:
            validate_csv_file(csv_file, options, logger)
        except CSVValidationError as e:
            logger.error(f"CSV validation failed: {e}")
            print(f"❌ Error: {e}")
            sys.exit(1)

        print('Processing CSV...')
        for option, _short, _long, _env, _help, message in OPTION_FLAGS:
            if message and getattr(options, option):
                logger.info(message)
        logger.info(f"Output file: {output_path}{' (overwrite enabled)' if options.overwrite_output else ''}")

        rows = tqdm(
            read_rows(csv_file),
            desc="Deduplicating",
            unit=" rows",
            disable=get_file_size_mb(csv_file) <= 10,
        )
        result_rows, duplicate_count = process(rows, options, logger)

        print(f"Unique accounts: {len(result_rows)}")
        print(f"Duplicates merged: {duplicate_count}")
        logger.info(f"Kept {len(result_rows)} records, merged {duplicate_count} duplicates")

        if dry_run:
            print("🔍 DRY RUN: No files were saved.")
            return

        if Path(output_path).exists() and Path(output_path).resolve() == Path(csv_file).resolve():
            print("\n💾 Creating backup of original file...")
            if not create_backup(csv_file, logger):
                print("❌ Failed to create backup. Aborting for safety.")
                sys.exit(1)

        try:
            write_rows(result_rows, output_path)
        except OSError as e:
            logger.error(f"Error saving cleaned CSV: {e}")
            print(f"❌ Error: could not write {output_path}: {e}")
            sys.exit(1)

        print('Done.')
        print(f"Saved file: {output_path}")
        logger.info(f"Cleaned data saved to: {output_path}")

    except KeyboardInterrupt:
        logger.info("Operation cancelled by user")
        print("\nOperation cancelled.")
        sys.exit(0)
    except Exception as e:
        logger.error(f"Unexpected error: {e}")
        print(f"Error: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
