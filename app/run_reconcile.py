# app/run_reconcile.py
import asyncio, signal, os, argparse
from dataclasses import replace

from utils.config import load_cfg
from utils.logger import logger
from infra import HttpContainer
from wallet.app.wallet_api import WalletJobAPI, maker_params_from_cfg
from wallet.models import MakerStartParams, percentage_to_factor
from wallet.enums import OfferType, Phase
from wallet.services.endpoints import make_endpoints_from_cfg

def env_default(name: str, default=None):
    return os.getenv(name, default)

def build_parser():
    p = argparse.ArgumentParser("jm-reconcile")
    p.add_argument("--config-path", default=env_default("JM_CONFIG_PATH", None))
    p.add_argument("--wallet",      default=env_default("JM_WALLET_NAME", None))
    p.add_argument("--token",       default=env_default("JM_WALLET_TOKEN", None))
    sub = p.add_subparsers(dest="cmd", required=True)

    start = sub.add_parser("maker-start", help="start the maker service and wait until it is running")
    start.add_argument("--ordertype", choices=[o.value for o in OfferType], default=None)
    start.add_argument("--cjfee-r-pct", type=float, default=None, help="relative fee in percent, e.g. 0.03")
    start.add_argument("--cjfee-a", type=int, default=None, help="absolute fee in sats")
    start.add_argument("--minsize", type=int, default=None)

    sub.add_parser("maker-stop", help="stop the maker service and wait until it is stopped")

    bond = sub.add_parser("bond", help="sweep a mixdepth into a fidelity bond address")
    bond.add_argument("--mixdepth", type=int, required=True)
    bond.add_argument("--destination", required=True)
    bond.add_argument("--counterparties", type=int, default=None)
    return p

def maker_params(args, cfg) -> MakerStartParams:
    overrides = {}
    if args.ordertype:
        overrides["ordertype"] = OfferType(args.ordertype)
    if args.cjfee_r_pct is not None:
        overrides["cjfee_r"] = percentage_to_factor(args.cjfee_r_pct)
    if args.cjfee_a is not None:
        overrides["cjfee_a"] = args.cjfee_a
    if args.minsize is not None:
        overrides["minsize"] = args.minsize
    return replace(maker_params_from_cfg(cfg), **overrides)

async def main() -> int:
    parser = build_parser()
    args = parser.parse_args()

    cfg = load_cfg(args.config_path)
    endpoints = make_endpoints_from_cfg(cfg, wallet_name=args.wallet)

    params = None
    if args.cmd == "maker-start":
        try:
            params = maker_params(args, cfg)
        except ValueError as e:
            parser.error(str(e))

    container = await HttpContainer.start(cfg, token=args.token)
    api = WalletJobAPI(container.http, endpoints, cfg)
    try:
        if args.cmd == "maker-start":
            stream = api.start_maker(params)
        elif args.cmd == "maker-stop":
            stream = api.stop_maker()
        else:
            stream = await api.create_fidelity_bond(args.mixdepth, args.destination, args.counterparties)

        def _graceful(*_):
            logger.info("interrupted, no longer watching the job (it may still complete)")
            stream.unsubscribe()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, _graceful)
            except NotImplementedError:
                pass

        async for status in stream:
            line = f"[{status.phase.value}]"
            if status.poll:
                line += f" poll={status.poll}"
            if status.reason:
                line += f" {status.reason}"
            print(line, flush=True)

        final = stream.final
        if final is None:
            return 130
        return 0 if final.phase is Phase.SUCCEEDED else 1
    finally:
        api.close()
        await container.stop()

def cli():
    raise SystemExit(asyncio.run(main()))

if __name__ == "__main__":
    cli()
