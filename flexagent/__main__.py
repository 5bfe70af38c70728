import sys
import json
import argparse


def main():
    parser = argparse.ArgumentParser(
        description="Flexvolume attachment agent")
    parser.set_defaults(func=lambda *_, **__: parser.print_help())

    subparsers = parser.add_subparsers()

    serve_parse = subparsers.add_parser("serve", help='Start the agent server (not for humans)')
    serve_parse.set_defaults(func=_serve)

    info_parse = subparsers.add_parser("info", help='Print versioning information for this agent')
    info_parse.add_argument("--output", default="json", choices=['json', 'yaml'], help="Output format")
    info_parse.set_defaults(func=_info)

    call_parse = subparsers.add_parser("call", help='Call a method of a running agent (used by the driver binary)')
    call_parse.add_argument("method", help="Method name, eg. Attach")
    call_parse.add_argument("payload", nargs="?", default="{}", help="Request as a JSON object")
    call_parse.add_argument("--endpoint", default=None, help="Agent endpoint (defaults to X_FLEX_ENDPOINT)")
    call_parse.add_argument("--timeout", type=float, default=120, help="Call timeout in seconds")
    call_parse.set_defaults(func=_call)

    test_parse = subparsers.add_parser("test", help='Start unit tests')
    test_parse.set_defaults(func=_test)

    args = parser.parse_args()
    return args.func(args)


def _info(args):
    from . configuration import Config
    conf = Config()
    info = dict(name=conf.plugin_name, version=conf.plugin_version, commit=conf.git_commit)
    if args.output == "yaml":
        import yaml
        yaml.dump(info, sys.stdout)
    elif args.output == "json":
        json.dump(info, sys.stdout)
    else:
        assert False, f"invalid output format: {args.output}"


def _call(args):
    import grpc
    from . configuration import Config
    from . server import FlexDriverStub, FlexDriverServicer

    if args.method not in FlexDriverServicer.METHODS:
        sys.exit(f"unknown method: {args.method} (use {'|'.join(FlexDriverServicer.METHODS)})")
    endpoint = args.endpoint or Config().listen_address
    with grpc.insecure_channel(endpoint) as channel:
        stub = FlexDriverStub(channel)
        try:
            ret = getattr(stub, args.method)(json.loads(args.payload), timeout=args.timeout)
        except grpc.RpcError as exc:
            json.dump(dict(status="Failure", code=exc.code().name, message=exc.details()), sys.stdout)
            sys.exit(1)
    json.dump(dict(ret, status="Success"), sys.stdout)


def _test(args):
    """Runs the tests without code coverage"""
    import pytest
    sys.exit(pytest.main(["-x", "tests", "-s", "-v"]))


def _serve(args):
    from . server import serve
    return serve()


if __name__ == '__main__':
    main()
