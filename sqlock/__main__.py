from sqlock.cli.commands import app

if __name__ == "__main__":
    app(prog_name="sqlock")
