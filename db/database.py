# --- Flask-SQLAlchemy ORM helpers ---
from flask_sqlalchemy import SQLAlchemy

# Approval rows are handed back to route handlers after commit and serialised
# there, so loaded state must survive the commit.
db = SQLAlchemy(session_options={'expire_on_commit': False})
# --- Flask app initialization ---
def init_db(app):
    db.init_app(app)
    with app.app_context():
        # Import models so their tables are registered before create_all
        import models  # noqa: F401
        db.create_all()
# --- Flask app context management ---
def get_session():
    """Get the session bound to the current app context."""
    return db.session
