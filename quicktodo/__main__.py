import argparse

import uvicorn

from . import config


def main(argv=None):
    ap = argparse.ArgumentParser(prog='quicktodo', description='Run the quicktodo API server')
    ap.add_argument('--host', default=config.HOST)
    ap.add_argument('--port', type=int, default=config.PORT)
    ap.add_argument('--docserver', action='store_true', help='serve the reference document store instead of the task API')
    ap.add_argument('--reload', action='store_true')
    args = ap.parse_args(argv)

    target = 'quicktodo.docserver:app' if args.docserver else 'quicktodo.main:app'
    uvicorn.run(target, host=args.host, port=args.port, reload=args.reload, log_level=config.LOG_LEVEL.lower())


if __name__ == '__main__':
    main()
