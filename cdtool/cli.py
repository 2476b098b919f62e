"""Command line entrypoint: ``cdtool <command>``."""

import argparse
import ipaddress
import logging
import sys
from typing import List, Optional

import uvicorn

from cdtool import commands, config
from cdtool.display import DETAIL_HEADER, SUMMARY_HEADER, detail_rows, render_table, summary_rows
from cdtool.errors import CdtoolError
from cdtool.k8s_client import load_batch_api
from cdtool.models import PollState

logger = logging.getLogger(__name__)


def _ip_address(value: str) -> str:
    try:
        return str(ipaddress.ip_address(value))
    except ValueError:
        raise argparse.ArgumentTypeError(f"{value!r} is not a valid IP address")


def _add_image_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--namespace", default=config.DEFAULT_NAMESPACE, help="k8s namespace for the job")
    parser.add_argument("--download-image", default=config.DEFAULT_DOWNLOAD_IMAGE, help="download container image")
    parser.add_argument("--build-image", default=config.DEFAULT_BUILD_IMAGE, help="build container image")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="cdtool", description="kubevirt container disk tool")
    parser.add_argument("--kubeconfig", default=None, help="path to k8s config (default: $KUBECONFIG or ~/.kube/config)")
    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default="INFO",
        help="Log level (default: INFO)",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    list_parser = sub.add_parser("list-jobs", help="list existing jobs in all namespaces")
    list_parser.add_argument("--all", action="store_true", help="include jobs that already succeeded")

    show_parser = sub.add_parser("show-job", help="show source and tag of jobs in a namespace")
    show_parser.add_argument("name", nargs="?", default=None, help="job name")
    show_parser.add_argument("--namespace", default=config.DEFAULT_NAMESPACE, help="k8s namespace where the job is")

    local_parser = sub.add_parser(
        "upload-local", help="upload local disk image file to the registry with specified tag"
    )
    local_parser.add_argument("file", help="local disk image file path")
    local_parser.add_argument("tag", help="container disk image tag")
    local_parser.add_argument(
        "--listen-addr", required=True, type=_ip_address,
        help="local http listening address, must be reachable from the cluster",
    )
    local_parser.add_argument(
        "--listen-port", type=int, default=config.DEFAULT_HTTP_PORT, help="local http server listening port"
    )
    _add_image_options(local_parser)

    remote_parser = sub.add_parser(
        "upload-remote", help="upload source disk image on remote server to the registry with specified tag"
    )
    remote_parser.add_argument("src", help="disk image source url (http, https or s3)")
    remote_parser.add_argument("tag", help="container disk image tag")
    remote_parser.add_argument("--wait", action="store_true", help="wait for completion")
    _add_image_options(remote_parser)

    serve_parser = sub.add_parser("serve", help="run the HTTP control plane")
    serve_parser.add_argument("--host", default="0.0.0.0")
    serve_parser.add_argument("--port", type=int, default=8000)
    return parser


def run(args: argparse.Namespace) -> int:
    if args.command == "serve":
        uvicorn.run("cdtool.app:app", host=args.host, port=args.port)
        return 0

    if args.command == "upload-local":
        commands.check_local_input(args.file, args.tag, args.listen_addr)
    elif args.command == "upload-remote":
        commands.check_remote_input(args.src, args.tag)

    api = load_batch_api(args.kubeconfig)

    if args.command == "list-jobs":
        rows = commands.list_job_rows(api, include_succeeded=args.all)
        render_table(SUMMARY_HEADER, summary_rows(rows))
        return 0

    if args.command == "show-job":
        rows = commands.show_job_rows(api, namespace=args.namespace, job_name=args.name)
        render_table(DETAIL_HEADER, detail_rows(rows))
        return 0

    image_options = dict(
        namespace=args.namespace,
        download_image=args.download_image,
        build_image=args.build_image,
    )
    if args.command == "upload-local":
        result = commands.upload_local(
            api, args.file, args.tag,
            listen_addr=args.listen_addr, listen_port=args.listen_port, **image_options,
        )
    else:
        result = commands.upload_remote(api, args.src, args.tag, wait=args.wait, **image_options)

    print(f"{result.namespace}/{result.job_name}")
    return 1 if result.state is PollState.ABORTED else 0


def main(argv: Optional[List[str]] = None) -> None:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    try:
        code = run(args)
    except CdtoolError as e:
        logger.debug("command %s failed", args.command, exc_info=True)
        print(f"error: {e}", file=sys.stderr)
        raise SystemExit(1)
    except KeyboardInterrupt:
        print("\ninterrupted", file=sys.stderr)
        raise SystemExit(130)
    raise SystemExit(code)


if __name__ == "__main__":
    main()
