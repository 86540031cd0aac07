# create.py
from trustwork import create_app
from trustwork.extensions import db
from trustwork.models.user import User, ROLES
from trustwork.security import issue_token


def main():
    app = create_app()
    with app.app_context():
        email = input("Email: ").strip().lower()
        name = input("Full name: ").strip()
        role = input(f"Role ({'/'.join(ROLES)}) [admin]: ").strip().lower() or "admin"
        if role not in ROLES:
            print(f"Unknown role {role!r}.")
            return

        # Check existing
        if User.query.filter_by(email=email).first():
            print("User with that email already exists.")
            return

        user = User(name=name, email=email, role=role)
        db.session.add(user)
        db.session.commit()
        print(f"{role.capitalize()} {email} created successfully.")
        print(f"Bearer token: {issue_token(user)}")

if __name__ == "__main__":
    main()
