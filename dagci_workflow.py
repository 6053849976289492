# dagci_workflow.py
# Backend/frontend pipeline: tests per changed area, analysis, image build and a final notification.
from __future__ import annotations

from dagci.dsl import cache, job, on, sh, wf

CATEGORIES = {
    "backend": ["back/**", "docker-compose.yml", "sonar-project.properties"],
    "frontend": ["front/**", "docker-compose.yml"],
    "workflows": ["*_workflow.py", ".github/workflows/**"],
}

WATCHED = ["back/**", "front/**", "*_workflow.py", "docker-compose.yml", "sonar-project.properties"]


def workflow():
    return wf(
        job(
            "backend-tests",
            sh("Run backend tests", "mvn clean test", cwd="back"),
            sh(
                "Generate test report",
                "mvn jacoco:report",
                cwd="back",
                artifacts={"coverage": "back/target/site/jacoco"},
            ),
            when="flags.backend || flags.workflows",
            cache=cache("~/.m2", key_files=["back/pom.xml"], prefix="m2-"),
            display_name="Backend Tests",
        ),
        job(
            "frontend-tests",
            sh("Install frontend dependencies", "npm ci", cwd="front"),
            sh(
                "Run frontend tests",
                "npm run test -- --watch=false --browsers=ChromeHeadless --code-coverage",
                cwd="front",
                artifacts={"coverage": "front/coverage"},
            ),
            when="flags.frontend || flags.workflows",
            cache=cache("front/node_modules", key_files=["front/package-lock.json"], prefix="npm-"),
            display_name="Frontend Tests",
        ),
        job(
            "sonarcloud",
            sh("Backend coverage", "mvn clean test jacoco:report", cwd="back", when="flags.backend"),
            sh("Frontend coverage", "npm ci && npm run test -- --watch=false --code-coverage",
               cwd="front", when="flags.frontend"),
            sh("Scan", "mvn sonar:sonar -Dsonar.host.url=https://sonarcloud.io", cwd="back"),
            needs=["backend-tests", "frontend-tests"],
            when=(
                "always() && (flags.backend || flags.frontend || flags.workflows)"
                " && (needs.backend-tests.result == 'success' || needs.backend-tests.result == 'skipped')"
                " && (needs.frontend-tests.result == 'success' || needs.frontend-tests.result == 'skipped')"
            ),
            timeout=1800,
            display_name="SonarCloud Analysis",
        ),
        job(
            "build-and-deploy",
            sh(
                "Build backend image",
                'docker build -t "$REGISTRY/bobapp-backend:$DAGCI_SHA" ./back'
                ' && echo "backend_image=$REGISTRY/bobapp-backend:$DAGCI_SHA" >> "$DAGCI_OUTPUT"',
                when="flags.backend",
            ),
            sh(
                "Build frontend image",
                'docker build -t "$REGISTRY/bobapp-frontend:$DAGCI_SHA" ./front'
                ' && echo "frontend_image=$REGISTRY/bobapp-frontend:$DAGCI_SHA" >> "$DAGCI_OUTPUT"',
                when="flags.frontend",
            ),
            needs=["backend-tests", "frontend-tests", "sonarcloud"],
            when=(
                "success() && context.ref == 'refs/heads/main' && context.event == 'push'"
                " && (flags.backend || flags.frontend)"
            ),
            display_name="Build and Deploy",
        ),
        job(
            "notify",
            sh("Notify success", "echo 'Pipeline completed successfully'",
               when="needs.build-and-deploy.result == 'success'"),
            sh("Notify failure", "echo 'Pipeline failed' && exit 1",
               when="needs.build-and-deploy.result == 'failure'"),
            needs=["build-and-deploy"],
            when="always()",
            display_name="Notification",
        ),
        categories=CATEGORIES,
        trigger=on("push", "pull_request", branches=["main", "develop"], paths=WATCHED),
        env={"REGISTRY": "docker.io"},
        name="ci-cd-pipeline",
    )
