"""crilist command line

Lists containers of a CRI runtime together with the pid, ip and mount point
found in containers-storage.
"""

import os
import sys
import logging
import argparse

import grpc

import crilist
from crilist import ListingOptions, CRIListError, InvalidStateError, run_listing
from crilist.cri import (
    API_VERSIONS,
    DEFAULT_ENDPOINT,
    CrictlRuntimeClient,
    GrpcRuntimeClient,
)
from crilist.storage import DEFAULT_STORAGE_CONF, load_store_options

logger = logging.getLogger("crilist.client")


def timeout_type(data):
    value = float(data)
    if value <= 0:
        raise ValueError(f"timeout {data!r} should be positive")
    return value


class Client:
    def __init__(self):
        parser = argparse.ArgumentParser("crilist")
        parser.add_argument(
            "--version", action="version", version=f"%(prog)s {crilist.__version__}"
        )
        parser.add_argument(
            "--verbosity",
            default="WARNING",
            choices=["DEBUG", "INFO", "WARNING", "ERROR"],
            help="verbosity of crilist, logs are written to stderr",
        )
        parser.add_argument(
            "-r",
            "--runtime-endpoint",
            default=os.environ.get("CONTAINER_RUNTIME_ENDPOINT"),
            help="CRI runtime endpoint, defaults to $CONTAINER_RUNTIME_ENDPOINT, "
            f"then to {DEFAULT_ENDPOINT} for gRPC and to crictl's own default",
        )
        parser.add_argument(
            "--api-version",
            default="v1",
            choices=API_VERSIONS,
            help="CRI API version spoken by the runtime",
        )
        parser.add_argument(
            "--timeout",
            type=timeout_type,
            help="deadline in seconds for the runtime call, no deadline by default",
        )
        parser.add_argument(
            "--storage-conf",
            default=os.environ.get("CRILIST_STORAGE_CONF", DEFAULT_STORAGE_CONF),
            help="containers-storage configuration file",
        )
        parser.add_argument(
            "--crictl",
            metavar="PATH",
            help="query the runtime with the given crictl binary instead of gRPC",
        )
        subparsers = parser.add_subparsers(title="command", required=True)
        ls = subparsers.add_parser(
            "ls", aliases=["pids"], help="list containers with pid, ip and mount point"
        )
        ls.set_defaults(func=self.cmd_ls)
        ls.add_argument("-p", "--pid", default="", help="filter by pid")
        ls.add_argument(
            "-s", "--state", default="", help="filter by container state"
        )
        ls.add_argument(
            "-n",
            "--name",
            default="",
            help="filter by container name regular expression pattern",
        )
        ls.add_argument("-a", "--all", action="store_true", help="show all containers")
        ls.add_argument(
            "-o", "--output", default="", help="output format, one of: json|yaml|table"
        )
        ls.add_argument(
            "--no-trunc",
            action="store_true",
            help="show output without truncating the ID",
        )
        self.parser = parser
        self.ls_parser = ls

    def main(self, argv=None):
        args = self.parser.parse_args(argv)
        logging.basicConfig(level=getattr(logging, args.verbosity))
        logger.debug("args: %s", args)
        self.args = args
        return args.func()

    def make_runtime_client(self):
        args = self.args
        if args.crictl:
            return CrictlRuntimeClient(
                args.crictl, endpoint=args.runtime_endpoint, timeout=args.timeout
            )
        return GrpcRuntimeClient(
            args.runtime_endpoint or DEFAULT_ENDPOINT,
            api_version=args.api_version,
            timeout=args.timeout,
        )

    def cmd_ls(self):
        args = self.args
        options = ListingOptions(
            all=args.all,
            pid=args.pid,
            state=args.state,
            name_regexp=args.name,
            no_trunc=args.no_trunc,
            output=args.output,
        )
        store_options = load_store_options(args.storage_conf)
        try:
            with self.make_runtime_client() as client:
                run_listing(client, options, store_options, stream=sys.stdout)
        except InvalidStateError as e:
            self.ls_parser.error(str(e))
        except grpc.RpcError as e:
            details = e.details() if isinstance(e, grpc.Call) else e
            self.parser.exit(1, f"listing containers failed: {details}\n")
        except (CRIListError, OSError, ValueError) as e:
            self.parser.exit(1, f"listing containers failed: {e}\n")


def main(argv=None):
    return Client().main(argv)


if __name__ == "__main__":
    main()
