#!/usr/bin/python3
"""
Microsoft 365 Endpoint List Generator

This module fetches the published Microsoft 365 endpoint feed and regroups it into
flat, deduplicated and sorted text files that firewall rule sets can consume directly.
Entries are grouped by service area, address type (url, ipv4, ipv6) and traffic
category, and optionally by TCP port signature.
"""

import argparse
import logging
import re
import time
import uuid
from collections import defaultdict
from pathlib import Path
from typing import Dict, Iterable, List, NamedTuple, Optional, Sequence
import requests


class EndpointListConfig:
    """Configuration constants for the endpoint list generator."""

    # Endpoint web service
    ENDPOINTS_URL = 'https://endpoints.office.com/endpoints'
    DEFAULT_INSTANCE = 'Worldwide'
    INSTANCES = ('Worldwide', 'USGovDoD', 'USGovGCCHigh', 'China')
    USER_AGENT = 'MS365-Endpoint-Lists/1.0'

    # Timeouts
    REQUEST_TIMEOUT = 30

    # Output
    DEFAULT_OUTPUT_DIR = Path('./lists')
    FILE_PREFIX = 'ms365'
    LOG_FILE = 'ms365_lists.log'

    # Record normalization
    DEFAULT_SERVICE_AREA = 'common'
    DEFAULT_CATEGORY = 'default'
    CATEGORY_TAGS = {
        'optimize': 'opt',
        'allow': 'allow',
        'default': 'default',
    }

    ADDRESS_TYPES = ('url', 'ipv4', 'ipv6')


class EndpointListError(Exception):
    """Base exception for endpoint list generation errors."""
    pass


class EndpointFetchError(EndpointListError):
    """Exception raised when the endpoint feed cannot be retrieved or parsed."""
    pass


class OutputWriteError(EndpointListError):
    """Exception raised when the output directory or a list file cannot be written."""
    pass


logger = logging.getLogger(__name__)

IPV4_PATTERN = re.compile(r'^\d{1,3}(\.\d{1,3}){3}(/\d{1,2})?$')
SERVICE_AREA_UNSAFE = re.compile(r'[^a-z0-9-]+')


class EndpointRecord(NamedTuple):
    """One entry of the endpoint feed."""

    id: Optional[int] = None
    category: Optional[str] = None
    service_area: Optional[str] = None
    urls: Sequence[str] = ()
    ips: Sequence[str] = ()
    tcp_ports: Optional[str] = None
    # Parsed for completeness, no list is generated from UDP ports
    udp_ports: Optional[str] = None

    @classmethod
    def from_dict(cls, data: dict) -> 'EndpointRecord':
        """Build a record from one JSON object, tolerating missing and null fields."""
        return cls(
            id=data.get('id'),
            category=data.get('category'),
            service_area=data.get('serviceArea'),
            urls=_as_list(data.get('urls')),
            ips=_as_list(data.get('ips')),
            tcp_ports=data.get('tcpPorts'),
            udp_ports=data.get('udpPorts'),
        )


class CategoryKey(NamedTuple):
    """Group key of a category list."""

    service_area: str
    address_type: str
    category: str

    @property
    def file_name(self) -> str:
        return (f"{EndpointListConfig.FILE_PREFIX}_{self.service_area}_"
                f"{self.address_type}_{self.category}.txt")


class PortKey(NamedTuple):
    """Group key of a port list."""

    service_area: str
    address_type: str
    port_signature: str

    @property
    def file_name(self) -> str:
        return (f"{EndpointListConfig.FILE_PREFIX}_{self.service_area}_"
                f"{self.address_type}_port{self.port_signature}.txt")


class GroupedEndpoints(NamedTuple):
    """Result of the classification pass: the two independent group spaces."""

    category_groups: Dict[CategoryKey, List[str]]
    port_groups: Dict[PortKey, List[str]]


class GenerationResult(NamedTuple):
    """Summary of one run, used for progress reporting only."""

    records: int
    category_files: Dict[str, int]
    port_files: Dict[str, int]

    @property
    def files_written(self) -> int:
        return len(self.category_files) + len(self.port_files)


def _as_list(value) -> List[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if not isinstance(value, (list, tuple)):
        return []
    return [item for item in value if isinstance(item, str)]


def resolve_category(category: Optional[str]) -> str:
    """Map a feed category to its list tag; anything unrecognized becomes 'default'."""
    if not isinstance(category, str):
        return EndpointListConfig.DEFAULT_CATEGORY
    return EndpointListConfig.CATEGORY_TAGS.get(
        category.strip().lower(), EndpointListConfig.DEFAULT_CATEGORY
    )


def resolve_service_area(service_area: Optional[str]) -> str:
    """Lowercase the service area, falling back to the generic label when absent."""
    if not isinstance(service_area, str):
        return EndpointListConfig.DEFAULT_SERVICE_AREA
    lowered = service_area.strip().lower()
    # Runs of file-name unsafe characters become a single '-'
    area = SERVICE_AREA_UNSAFE.sub('-', lowered).strip('-')
    if area != lowered:
        logger.debug(f"Service area '{service_area}' sanitized to '{area}'")
    return area or EndpointListConfig.DEFAULT_SERVICE_AREA


def port_signature(ports) -> Optional[str]:
    """
    Normalize a port description such as '80, 443' into a signature like '80-443'.

    Returns:
        The signature, or None when no ports are given
    """
    if isinstance(ports, int) and not isinstance(ports, bool):
        ports = str(ports)
    if not isinstance(ports, str):
        return None
    signature = re.sub(r'\s+', '', ports).replace(',', '-')
    return signature or None


def address_type(ip: str) -> Optional[str]:
    """
    Classify an address literal or CIDR block by its textual shape.

    Returns:
        'ipv4', 'ipv6', or None for anything that looks like neither
    """
    if ':' in ip:
        return 'ipv6'
    if IPV4_PATTERN.match(ip):
        return 'ipv4'
    return None


def classify_records(records: Iterable[EndpointRecord]) -> GroupedEndpoints:
    """
    Fan every record's URLs and IPs out into category groups and port groups.

    Args:
        records: Endpoint records in feed order

    Returns:
        GroupedEndpoints with one list of (possibly duplicate) values per key
    """
    category_groups: Dict[CategoryKey, List[str]] = defaultdict(list)
    port_groups: Dict[PortKey, List[str]] = defaultdict(list)
    dropped = 0

    for record in records:
        category = resolve_category(record.category)
        service_area = resolve_service_area(record.service_area)
        ports = port_signature(record.tcp_ports)

        values = [('url', url.strip()) for url in record.urls if url.strip()]
        for ip in record.ips:
            ip = ip.strip()
            if not ip:
                continue
            ip_type = address_type(ip)
            if ip_type is None:
                dropped += 1
                logger.debug(f"Record {record.id}: unclassifiable address ignored: {ip}")
                continue
            values.append((ip_type, ip))

        for value_type, value in values:
            category_groups[CategoryKey(service_area, value_type, category)].append(value)
            if ports:
                port_groups[PortKey(service_area, value_type, ports)].append(value)

    if dropped:
        logger.debug(f"Dropped {dropped} unclassifiable addresses")

    return GroupedEndpoints(dict(category_groups), dict(port_groups))


class PortListFilter(NamedTuple):
    """A 'servicearea:addrtype:port[-port...]' selector for port lists."""

    service_area: str
    address_type: str
    port_signature: str

    @classmethod
    def parse(cls, text: str) -> 'PortListFilter':
        """
        Parse a filter specification.

        Raises:
            ValueError: If the text is not of the form servicearea:addrtype:ports
        """
        parts = text.split(':')
        if len(parts) != 3:
            raise ValueError(f"expected servicearea:addrtype:port[-port...], got '{text}'")

        area, addr_type, ports = (part.strip() for part in parts)
        addr_type = addr_type.lower()
        if not area:
            raise ValueError(f"missing service area in '{text}'")
        if addr_type not in EndpointListConfig.ADDRESS_TYPES:
            raise ValueError(
                f"unknown address type '{addr_type}' in '{text}', "
                f"expected one of {', '.join(EndpointListConfig.ADDRESS_TYPES)}"
            )
        signature = port_signature(ports)
        if signature is None:
            raise ValueError(f"missing ports in '{text}'")

        return cls(resolve_service_area(area), addr_type, signature)

    def matches(self, key: PortKey) -> bool:
        return tuple(self) == tuple(key)


def select_port_groups(port_groups: Dict[PortKey, List[str]],
                       filters: Optional[Sequence[PortListFilter]]) -> Dict[PortKey, List[str]]:
    """Keep only the port groups requested by at least one filter; no filters means none."""
    if not filters:
        return {}

    selected = {}
    for key, values in port_groups.items():
        if any(port_filter.matches(key) for port_filter in filters):
            selected[key] = values
        else:
            logger.debug(f"Port list {key.file_name} not requested, skipping")
    return selected


def clean_output_directory(output_dir: Path) -> int:
    """
    Create the output directory if needed and delete every .txt file in it.

    Returns:
        Number of files deleted

    Raises:
        OutputWriteError: If the directory cannot be created or cleaned
    """
    try:
        output_dir.mkdir(parents=True, exist_ok=True)
        removed = 0
        for stale in sorted(output_dir.glob('*.txt')):
            if stale.is_file():
                stale.unlink()
                removed += 1
                logger.debug(f"Removed stale list: {stale}")
        return removed
    except OSError as e:
        error_msg = f"Error preparing output directory {output_dir}: {e}"
        logger.error(error_msg)
        raise OutputWriteError(error_msg) from e


def materialize_groups(groups: dict, output_dir: Path, dry_run: bool = False) -> Dict[str, int]:
    """
    Write one sorted, duplicate-free list file per non-empty group.

    Args:
        groups: Mapping of CategoryKey or PortKey to collected values
        output_dir: Directory the files are written to
        dry_run: If True, only log what would be written

    Returns:
        Mapping of file name to number of entries, in write order

    Raises:
        OutputWriteError: If a file cannot be written or two groups share a file name
    """
    by_name = {}
    for key, values in groups.items():
        name = key.file_name
        if name in by_name:
            error_msg = f"Groups {by_name[name][0]} and {key} both map to {name}"
            logger.error(error_msg)
            raise OutputWriteError(error_msg)
        by_name[name] = (key, values)

    written: Dict[str, int] = {}
    for name in sorted(by_name):
        entries = sorted(set(by_name[name][1]))
        if not entries:
            continue

        path = output_dir / name
        if dry_run:
            logger.info(f"DRY RUN: Would write {len(entries)} entries to {path}")
        else:
            try:
                path.write_text(''.join(f"{entry}\n" for entry in entries), encoding='utf-8')
            except OSError as e:
                error_msg = f"Error writing {path}: {e}"
                logger.error(error_msg)
                raise OutputWriteError(error_msg) from e
            logger.info(f"Wrote {len(entries)} entries to {path}")
        written[name] = len(entries)

    return written


class EndpointListGenerator:
    """Main class for fetching the endpoint feed and writing the list files."""

    def __init__(self, output_dir: Optional[str] = None, client_request_id: Optional[str] = None,
                 port_list_filters: Optional[Sequence[PortListFilter]] = None,
                 instance: Optional[str] = None, no_ipv6: bool = False,
                 dry_run: bool = False, verbose: bool = False, log_file: Optional[str] = None):
        """
        Initialize the endpoint list generator.

        Args:
            output_dir: Directory for the list files (default: ./lists)
            client_request_id: Request identifier sent to the service; generated if omitted
            port_list_filters: Port lists to generate; no port lists are written without them
            instance: Cloud instance to query (default: Worldwide)
            no_ipv6: If True, ask the service to leave out IPv6 ranges
            dry_run: If True, only show what would be written
            verbose: If True, enable debug logging
            log_file: Optional path to the log file
        """
        self.config = EndpointListConfig()
        self.dry_run = dry_run
        self._setup_logging(verbose, log_file)
        self.output_dir = Path(output_dir) if output_dir else self.config.DEFAULT_OUTPUT_DIR
        self.client_request_id = client_request_id or str(uuid.uuid4())
        self.port_list_filters = list(port_list_filters or [])
        self.instance = instance or self.config.DEFAULT_INSTANCE
        self.no_ipv6 = no_ipv6
        self.session = self._create_session()

    def _setup_logging(self, verbose: bool, log_file: Optional[str]) -> None:
        """Configure logging with appropriate level and handlers."""
        level = logging.DEBUG if verbose else logging.INFO

        logging.basicConfig(
            level=level,
            format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            handlers=[
                logging.StreamHandler(),
                logging.FileHandler(log_file or self.config.LOG_FILE)
            ]
        )
        self.logger = logging.getLogger(__name__)

        if self.dry_run:
            self.logger.info("=== DRY RUN MODE - No files will be written ===")

    def _create_session(self) -> requests.Session:
        """Create a configured requests session."""
        session = requests.Session()
        session.headers.update({'User-Agent': self.config.USER_AGENT})
        return session

    def fetch_endpoints(self) -> List[EndpointRecord]:
        """
        Fetch the endpoint feed for the configured instance.

        Returns:
            The records in feed order

        Raises:
            EndpointFetchError: On network errors, HTTP errors or a malformed body
        """
        url = f"{self.config.ENDPOINTS_URL}/{self.instance}"
        params = {'clientrequestid': self.client_request_id}
        if self.no_ipv6:
            params['NoIPv6'] = 'true'

        try:
            self.logger.info(f"Fetching URL: {url} (client request id {self.client_request_id})")
            start_time = time.time()

            response = self.session.get(url, params=params, timeout=self.config.REQUEST_TIMEOUT)
            response.raise_for_status()
            data = response.json()

            elapsed = time.time() - start_time
            self.logger.info(
                f"Successfully fetched {url}, "
                f"response size: {len(response.content)} bytes, "
                f"elapsed: {elapsed:.2f}s"
            )
        except requests.RequestException as e:
            error_msg = f"Error fetching {url}: {e}"
            self.logger.error(error_msg)
            raise EndpointFetchError(error_msg) from e
        except ValueError as e:
            error_msg = f"Invalid JSON received from {url}: {e}"
            self.logger.error(error_msg)
            raise EndpointFetchError(error_msg) from e

        if not isinstance(data, list):
            error_msg = f"Unexpected response from {url}: expected a JSON array, got {type(data).__name__}"
            self.logger.error(error_msg)
            raise EndpointFetchError(error_msg)

        records = []
        for position, item in enumerate(data):
            if isinstance(item, dict):
                records.append(EndpointRecord.from_dict(item))
            else:
                self.logger.debug(f"Skipping non-object entry at position {position}: {item!r}")

        self.logger.info(f"Received {len(records)} endpoint records")
        return records

    def generate(self, records: Sequence[EndpointRecord]) -> GenerationResult:
        """
        Classify the records and write all list files.

        Args:
            records: Endpoint records to process

        Returns:
            GenerationResult with per-file entry counts
        """
        grouped = classify_records(records)
        port_groups = select_port_groups(grouped.port_groups, self.port_list_filters)
        self.logger.info(
            f"Classified {len(records)} records into {len(grouped.category_groups)} category groups "
            f"and {len(grouped.port_groups)} port groups ({len(port_groups)} requested)"
        )

        if self.dry_run:
            self.logger.info(f"DRY RUN: Would clean .txt files in {self.output_dir}")
        else:
            removed = clean_output_directory(self.output_dir)
            self.logger.info(f"Removed {removed} existing list files from {self.output_dir}")

        category_files = materialize_groups(grouped.category_groups, self.output_dir, self.dry_run)
        port_files = materialize_groups(port_groups, self.output_dir, self.dry_run)
        return GenerationResult(len(records), category_files, port_files)

    def run(self) -> GenerationResult:
        """Main execution method."""
        self.logger.info("=== Starting Microsoft 365 Endpoint List Generation ===")

        try:
            records = self.fetch_endpoints()
            result = self.generate(records)
        except Exception as e:
            self.logger.error(f"Fatal error: {e}")
            raise
        finally:
            self.session.close()

        if self.dry_run:
            self.logger.info(f"DRY RUN: Would have written {result.files_written} list files")
        else:
            self.logger.info(
                f"Wrote {result.files_written} list files to {self.output_dir} "
                f"({len(result.category_files)} category, {len(result.port_files)} port)"
            )
        self.logger.info("=== Endpoint list generation completed successfully ===")
        return result


def _port_list_filter(text: str) -> PortListFilter:
    try:
        return PortListFilter.parse(text)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e))


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description='Generate firewall-ready Microsoft 365 endpoint lists',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s                                       # Write category lists to ./lists
  %(prog)s --output-directory /srv/fw/ms365      # Use another output directory
  %(prog)s --generate-port-lists-for exchange:url:443 skype:ipv4:80-443
  %(prog)s --dry-run --verbose                   # Show what would be written
        """
    )
    parser.add_argument(
        '--output-directory', '-OutputDirectory',
        dest='output_directory',
        type=str,
        help=f'Directory for the list files (default: {EndpointListConfig.DEFAULT_OUTPUT_DIR})'
    )
    parser.add_argument(
        '--client-request-id', '-ClientRequestId',
        dest='client_request_id',
        type=str,
        help='Client request id sent to the endpoint service (default: a new UUID)'
    )
    parser.add_argument(
        '--generate-port-lists-for', '-GeneratePortListsFor',
        dest='port_list_filters',
        type=_port_list_filter,
        nargs='+',
        action='extend',
        metavar='AREA:TYPE:PORTS',
        help='Port lists to generate, e.g. exchange:url:443 or common:ipv4:80-443 '
             '(default: no port lists)'
    )
    parser.add_argument(
        '--instance',
        choices=EndpointListConfig.INSTANCES,
        default=EndpointListConfig.DEFAULT_INSTANCE,
        help=f'Cloud instance to query (default: {EndpointListConfig.DEFAULT_INSTANCE})'
    )
    parser.add_argument(
        '--no-ipv6',
        action='store_true',
        help='Ask the service to leave out IPv6 ranges'
    )
    parser.add_argument(
        '--dry-run',
        action='store_true',
        help='Show what would be written without touching the output directory'
    )
    parser.add_argument(
        '--verbose', '-v',
        action='store_true',
        help='Enable verbose (debug) logging'
    )
    parser.add_argument(
        '--log-file',
        type=str,
        help=f'Path to the log file (default: {EndpointListConfig.LOG_FILE})'
    )

    args = parser.parse_args(argv)

    try:
        generator = EndpointListGenerator(
            output_dir=args.output_directory,
            client_request_id=args.client_request_id,
            port_list_filters=args.port_list_filters,
            instance=args.instance,
            no_ipv6=args.no_ipv6,
            dry_run=args.dry_run,
            verbose=args.verbose,
            log_file=args.log_file
        )
        generator.run()
        return 0
    except KeyboardInterrupt:
        logging.getLogger(__name__).info("Interrupted by user")
        return 130
    except Exception as e:
        logging.getLogger(__name__).error(f"Fatal error: {e}")
        return 1


if __name__ == "__main__":
    exit(main())
