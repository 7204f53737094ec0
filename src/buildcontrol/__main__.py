from buildcontrol.main import app

app(prog_name="buildcontrol")
