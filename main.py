import os
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pymongo.database import Database
from pymongo.errors import PyMongoError

from config import Settings, configure_logging
from database import LOANS_COLLECTION, USERS_COLLECTION, connect, serialize_doc
from errors import Forbidden, InvalidInput, LendingError, InternalFailure, NotFound
from identity import FirebaseVerifier, authenticate
from loans import LoanStore
from policy import AccessPolicy
from schemas import (
    LOAN_STATUSES,
    PENDING,
    LoanIn,
    ProfileUpdate,
    RoleStats,
    RoleUpdate,
    ShowOnHomeUpdate,
    StatusUpdate,
    UserIn,
)
from users import UserDirectory

logger = logging.getLogger(__name__)

# Loans a reviewer still has to act on
OPEN_APPLICATION_STATUSES = ("Pending", "Reviewing")


@dataclass
class Services:
    db: Optional[Database]
    users: UserDirectory
    loans: LoanStore
    verifier: Any
    policy: AccessPolicy
    settings: Settings


@dataclass
class Actor:
    email: str
    user: Optional[Dict[str, Any]] = None


# Helpers
@contextmanager
def store_errors(message: str):
    """Surface driver failures as a generic 500 with *message*."""
    try:
        yield
    except PyMongoError as exc:
        logger.exception("%s", message)
        raise InternalFailure(message) from exc


def serialize_all(docs) -> List[Dict[str, Any]]:
    return [serialize_doc(d) for d in docs]


def get_services(request: Request) -> Services:
    return request.app.state.services


def gate(route: str):
    """Dependency enforcing the access rule registered for *route*.

    Returns the acting user, or ``None`` on public routes.
    """

    def dependency(request: Request, services: Services = Depends(get_services)) -> Optional[Actor]:
        rule = services.policy.rule_for(route)
        if not rule.authenticate:
            return None
        identity = authenticate(services.verifier, request.headers.get("Authorization"))
        actor = Actor(email=identity.email)
        if rule.role_gated:
            with store_errors("Internal server error"):
                actor.user = services.users.find_by_email(identity.email)
            role = actor.user.get("role") if actor.user else None
            decision = services.policy.authorize_role_gate(role, rule.roles)
            if not decision.allowed:
                logger.info("%s denied for %s: %s", route, identity.email, decision.reason)
            decision.enforce()
        return actor

    return dependency


def create_app(
    settings: Optional[Settings] = None,
    db: Optional[Database] = None,
    verifier=None,
    policy: Optional[AccessPolicy] = None,
) -> FastAPI:
    settings = settings or Settings.from_env()
    if db is None:
        db = connect(settings)

    app = FastAPI(title="Lending Platform API")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.state.services = Services(
        db=db,
        users=UserDirectory(db[USERS_COLLECTION] if db is not None else None),
        loans=LoanStore(db[LOANS_COLLECTION] if db is not None else None),
        verifier=verifier or FirebaseVerifier.from_settings(settings),
        policy=policy or AccessPolicy.from_settings(settings),
        settings=settings,
    )

    @app.exception_handler(LendingError)
    async def lending_error_handler(request: Request, exc: LendingError):
        return JSONResponse(status_code=exc.status_code, content={"message": exc.message})

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError):
        return JSONResponse(
            status_code=InvalidInput.status_code,
            content={"message": InvalidInput.default_message, "errors": jsonable_encoder(exc.errors())},
        )

    register_routes(app)
    return app


def register_routes(app: FastAPI) -> None:
    @app.get("/")
    def root():
        return {"message": "Lending Platform API"}

    @app.get("/test")
    def test_database(services: Services = Depends(get_services)):
        settings = services.settings
        response = {
            "backend": "✅ Running",
            "database": "❌ Not Available",
            "database_url": "✅ Set" if settings.database_url else "❌ Not Set",
            "database_name": settings.database_name or "❌ Not Set",
            "connection_status": "Not Connected",
            "collections": [],
        }
        if services.db is not None:
            response["database"] = "✅ Available"
            response["connection_status"] = "Connected"
            try:
                response["collections"] = services.db.list_collection_names()
                response["database"] = "✅ Connected & Working"
            except PyMongoError as e:
                response["database"] = f"⚠️  Connected but Error: {str(e)[:60]}"
        return response

    # Users
    @app.post("/users")
    def create_user(
        payload: UserIn,
        actor: Optional[Actor] = Depends(gate("users.create")),
        services: Services = Depends(get_services),
    ):
        if not payload.email:
            raise InvalidInput("Email is required")
        if actor is not None:
            services.policy.authorize_ownership(actor.email, payload.email).enforce()
        with store_errors("Failed to save user"):
            user, created = services.users.create_if_absent(payload.email, payload.model_dump())
        return {
            "message": "User created successfully" if created else "User updated successfully",
            "created": created,
            "user": serialize_doc(user),
        }

    @app.get("/users/manager-stats", response_model=RoleStats)
    def manager_stats(
        actor: Actor = Depends(gate("users.manager_stats")),
        services: Services = Depends(get_services),
    ):
        with store_errors("Failed to fetch user stats"):
            return services.users.role_counts()

    @app.get("/users/{email}/role")
    def user_role(
        email: str,
        actor: Optional[Actor] = Depends(gate("users.role")),
        services: Services = Depends(get_services),
    ):
        with store_errors("Failed to fetch user role"):
            return {"role": services.users.get_role(email)}

    @app.get("/users")
    def list_users(
        actor: Actor = Depends(gate("users.list")),
        services: Services = Depends(get_services),
    ):
        with store_errors("Failed to fetch users"):
            return serialize_all(services.users.list_all())

    @app.patch("/users/{user_id}/role")
    def set_user_role(
        user_id: str,
        payload: RoleUpdate,
        actor: Actor = Depends(gate("users.set_role")),
        services: Services = Depends(get_services),
    ):
        role = services.policy.check_role(payload.role)
        with store_errors("Failed to update user role"):
            services.users.set_role(user_id, role)
        return {"message": "User role updated successfully"}

    @app.patch("/users/{user_id}/suspend")
    def suspend_user(
        user_id: str,
        actor: Actor = Depends(gate("users.suspend")),
        services: Services = Depends(get_services),
    ):
        with store_errors("Failed to suspend user"):
            services.users.set_status(user_id, "suspended")
        return {"message": "User suspended successfully"}

    @app.patch("/users/{user_id}/approve")
    def approve_user(
        user_id: str,
        actor: Actor = Depends(gate("users.approve")),
        services: Services = Depends(get_services),
    ):
        with store_errors("Failed to approve user"):
            services.users.set_status(user_id, "approved")
        return {"message": "User approved successfully"}

    # Profile
    @app.get("/profile")
    def read_profile(
        actor: Actor = Depends(gate("profile.read")),
        services: Services = Depends(get_services),
    ):
        with store_errors("Failed to fetch profile"):
            user = services.users.find_by_email(actor.email)
        if not user:
            raise NotFound("User profile not found")
        return serialize_doc(user)

    @app.put("/profile")
    def update_profile(
        payload: ProfileUpdate,
        actor: Actor = Depends(gate("profile.update")),
        services: Services = Depends(get_services),
    ):
        with store_errors("Failed to update profile"):
            services.users.update_own_profile(actor.email, payload.model_dump(exclude_unset=True))
        return {"message": "Profile updated successfully"}

    # Loans: borrower self-service
    @app.get("/loans")
    def list_loans(
        email: Optional[str] = None,
        actor: Actor = Depends(gate("loans.query")),
        services: Services = Depends(get_services),
    ):
        decision, owner = services.policy.authorize_loan_query(actor.email, email)
        decision.enforce()
        with store_errors("Failed to fetch loans"):
            return serialize_all(services.loans.list_for_owner(owner))

    @app.post("/loans")
    def create_loan(
        payload: LoanIn,
        actor: Actor = Depends(gate("loans.create")),
        services: Services = Depends(get_services),
    ):
        fields = payload.model_dump()
        with store_errors("Failed to save loan application"):
            if services.users.get_role(actor.email) == "manager":
                loan = services.loans.create(actor.email, fields, created_by=actor.email)
                message = "Loan created successfully"
            else:
                # applications always start out Pending and off the home page
                fields.pop("status", None)
                fields.pop("showOnHome", None)
                loan = services.loans.create(actor.email, fields)
                message = "Loan application saved successfully"
        return {"message": message, "id": str(loan["_id"]), "loan": serialize_doc(loan)}

    def _owned_loan(services: Services, actor: Actor, loan_id: str) -> Dict[str, Any]:
        loan = services.loans.find_by_id(loan_id)
        if not loan:
            raise NotFound("Loan not found")
        decision = services.policy.authorize_ownership(actor.email, loan.get("email"))
        if not decision.allowed:
            raise Forbidden("Forbidden: Cannot modify other users' loan data")
        return loan

    @app.patch("/loans/{loan_id}")
    def owner_update_loan(
        loan_id: str,
        payload: StatusUpdate,
        actor: Actor = Depends(gate("loans.owner_update")),
        services: Services = Depends(get_services),
    ):
        with store_errors("Failed to update loan status"):
            _owned_loan(services, actor, loan_id)
            status = services.policy.check_owner_status_target(payload.status)
            services.loans.conditional_update(loan_id, PENDING, {"status": status})
        return {"message": "Loan status updated successfully", "id": loan_id}

    @app.delete("/loans/{loan_id}")
    def owner_delete_loan(
        loan_id: str,
        actor: Actor = Depends(gate("loans.owner_delete")),
        services: Services = Depends(get_services),
    ):
        with store_errors("Failed to delete loan"):
            _owned_loan(services, actor, loan_id)
            services.loans.conditional_delete(loan_id, PENDING)
        return {"message": "Loan deleted successfully", "id": loan_id}

    # Loans: review listings
    @app.get("/loans/user/{email}")
    def loans_by_user(
        email: str,
        actor: Actor = Depends(gate("loans.by_user")),
        services: Services = Depends(get_services),
    ):
        with store_errors("Failed to fetch loans"):
            return serialize_all(services.loans.list_for_owner(email))

    @app.get("/loans/admin")
    def admin_loans(
        actor: Actor = Depends(gate("loans.admin_list")),
        services: Services = Depends(get_services),
    ):
        with store_errors("Failed to fetch loans"):
            return serialize_all(services.loans.list_all())

    @app.get("/loans/applications")
    def loan_applications(
        actor: Actor = Depends(gate("loans.applications")),
        services: Services = Depends(get_services),
    ):
        with store_errors("Failed to fetch loan applications"):
            return serialize_all(services.loans.list_by_status_in(OPEN_APPLICATION_STATUSES))

    @app.get("/loans/manager")
    def manager_loans(
        actor: Actor = Depends(gate("loans.manager_list")),
        services: Services = Depends(get_services),
    ):
        with store_errors("Failed to fetch loans"):
            return serialize_all(services.loans.list_all())

    @app.get("/loans/pending")
    def pending_loans(
        actor: Actor = Depends(gate("loans.pending")),
        services: Services = Depends(get_services),
    ):
        with store_errors("Failed to fetch loans"):
            return serialize_all(services.loans.list_by_status_in({"Pending"}))

    @app.get("/loans/approved")
    def approved_loans(
        actor: Actor = Depends(gate("loans.approved")),
        services: Services = Depends(get_services),
    ):
        with store_errors("Failed to fetch loans"):
            return serialize_all(services.loans.list_by_status_in({"Approved"}))

    # Loans: privileged changes
    @app.patch("/loans/{loan_id}/status/admin")
    def admin_set_status(
        loan_id: str,
        payload: StatusUpdate,
        actor: Actor = Depends(gate("loans.admin_status")),
        services: Services = Depends(get_services),
    ):
        status = services.policy.check_privileged_status(payload.status)
        with store_errors("Failed to update loan status"):
            services.loans.unconditional_update(loan_id, {"status": status})
        return {"message": "Loan status updated successfully", "id": loan_id}

    @app.patch("/loans/{loan_id}/status")
    def manager_set_status(
        loan_id: str,
        payload: StatusUpdate,
        actor: Actor = Depends(gate("loans.manager_status")),
        services: Services = Depends(get_services),
    ):
        status = services.policy.check_privileged_status(payload.status)
        with store_errors("Failed to update loan status"):
            services.loans.unconditional_update(loan_id, {"status": status})
        return {"message": "Loan status updated successfully", "id": loan_id}

    @app.patch("/loans/{loan_id}/show-on-home")
    def set_show_on_home(
        loan_id: str,
        payload: ShowOnHomeUpdate,
        actor: Actor = Depends(gate("loans.show_on_home")),
        services: Services = Depends(get_services),
    ):
        with store_errors("Failed to update loan show on home"):
            services.loans.unconditional_update(loan_id, {"showOnHome": payload.showOnHome})
        return {"message": "Loan show on home updated successfully", "id": loan_id}

    @app.put("/loans/{loan_id}")
    def manager_update_loan(
        loan_id: str,
        payload: LoanIn,
        actor: Actor = Depends(gate("loans.manager_update")),
        services: Services = Depends(get_services),
    ):
        patch = payload.model_dump()
        if "status" in patch and patch["status"] not in LOAN_STATUSES:
            raise InvalidInput("Invalid status")
        with store_errors("Failed to update loan"):
            services.loans.unconditional_update(loan_id, patch)
        return {"message": "Loan updated successfully", "id": loan_id}

    @app.delete("/loans/{loan_id}/admin")
    def admin_delete_loan(
        loan_id: str,
        actor: Actor = Depends(gate("loans.admin_delete")),
        services: Services = Depends(get_services),
    ):
        with store_errors("Failed to delete loan"):
            services.loans.unconditional_delete(loan_id)
        return {"message": "Loan deleted successfully", "id": loan_id}


settings = Settings.from_env()
configure_logging(settings.log_level)
app = create_app(settings)


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", settings.port))
    uvicorn.run(app, host="0.0.0.0", port=port)
