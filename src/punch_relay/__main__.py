import os

from dotenv import load_dotenv

from punch_relay import create_app


def main():
    load_dotenv()
    app = create_app()
    port = int(os.getenv("PORT", 57575))
    # Reloader would start a second pipeline in the parent process
    app.run(host=os.getenv("HOST", "127.0.0.1"), port=port, debug=False, threaded=True)


if __name__ == "__main__":
    main()
